"""Generated proxy artifacts.

Pure functions: same parameters in, same text out, so writing them through
:func:`nodeforge.artifacts.write_artifact` is idempotent.
"""

from __future__ import annotations

import textwrap

import yaml

NGINX_CONF = """\
user  nginx;
worker_processes  auto;

error_log  /var/log/nginx/error.log warn;
pid        /var/run/nginx.pid;

events {
    worker_connections  1024;
}

http {
    include       /etc/nginx/mime.types;
    default_type  application/octet-stream;

    log_format  main  '$remote_addr - $remote_user [$time_local] "$request" '
                      '$status $body_bytes_sent "$http_referer" '
                      '"$http_user_agent" "$http_x_forwarded_for"';

    access_log  /var/log/nginx/access.log  main;

    sendfile        on;
    keepalive_timeout  65;

    include /etc/nginx/conf.d/*.conf;
}
"""

# nginx.conf is baked in (not bind-mounted) so the TLS variant can be docker cp'd over it
DOCKERFILE = """\
FROM nginx:latest

RUN apt-get update && \\
    apt-get install -y --no-install-recommends certbot curl dnsutils && \\
    rm -rf /var/lib/apt/lists/*

COPY nginx.conf /etc/nginx/nginx.conf

EXPOSE 80 443

CMD ["nginx", "-g", "daemon off;"]
"""

_HOOK = """\
#!/bin/sh
# Certbot DNS-01 {action} hook: hand the challenge to the host service.
set -eu

DOMAIN="${{CHALLENGE_DOMAIN:-${{CERTBOT_DOMAIN:-}}}}"
VALIDATION="${{CHALLENGE_VALIDATION:-${{CERTBOT_VALIDATION:-}}}}"

if [ -z "$DOMAIN" ] || [ -z "$VALIDATION" ]; then
    echo "missing challenge domain or validation" >&2
    exit 2
fi

curl --fail --silent --show-error --max-time {max_time} \\
    -H "Authorization: Bearer ${{HOOK_TOKEN}}" \\
    -H "Content-Type: application/json" \\
    -d "{{\\"domain\\": \\"$DOMAIN\\", \\"validation\\": \\"$VALIDATION\\"}}" \\
    "${{HOOK_URL}}/acme/{action}"
"""


def render_nginx_conf() -> str:
    return NGINX_CONF


def render_dockerfile() -> str:
    return DOCKERFILE


def render_hook(action: str, *, max_time: int) -> str:
    """Auth or cleanup hook script; *max_time* bounds the callback in seconds."""
    if action not in ("auth", "cleanup"):
        raise ValueError(f"Unknown hook action: {action}")
    return _HOOK.format(action=action, max_time=max_time)


def render_proxy_compose(*, container_name: str, network: str = "nginx-network") -> str:
    doc = {
        "services": {
            "nginx": {
                "build": ".",
                "container_name": container_name,
                "restart": "unless-stopped",
                "ports": ["80:80", "443:443"],
                "volumes": ["../certs:/etc/letsencrypt", "./hooks:/hooks:ro"],
                "extra_hosts": ["host.docker.internal:host-gateway"],
                "networks": [network],
            }
        },
        "networks": {network: {"driver": "bridge"}},
    }
    return yaml.safe_dump(doc, sort_keys=False)


def render_ssl_conf(*, fqdn: str, upstream: str) -> str:
    live = f"/etc/letsencrypt/live/{fqdn}"
    servers = textwrap.dedent(
        f"""\
            server {{
                listen 80;
                listen [::]:80;
                server_name {fqdn} *.{fqdn};
                return 301 https://$host$request_uri;
            }}

            server {{
                listen 443 ssl;
                listen [::]:443 ssl;
                server_name {fqdn} *.{fqdn};

                ssl_certificate     {live}/fullchain.pem;
                ssl_certificate_key {live}/privkey.pem;
                ssl_protocols       TLSv1.2 TLSv1.3;

                location / {{
                    proxy_pass {upstream};
                    proxy_set_header Host $host;
                    proxy_set_header X-Real-IP $remote_addr;
                    proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
                    proxy_set_header X-Forwarded-Proto $scheme;
                    proxy_http_version 1.1;
                    proxy_set_header Upgrade $http_upgrade;
                    proxy_set_header Connection "upgrade";
                }}
            }}
        """
    )
    head, _, _ = NGINX_CONF.rpartition("    include /etc/nginx/conf.d/*.conf;\n}\n")
    return head + textwrap.indent(servers, "    ") + "}\n"

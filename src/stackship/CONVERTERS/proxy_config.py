# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Reverse proxy routing table and its nginx rendering.
The table is static: changing a route means rebuilding the frontend image.
"""
import logging
import os
from enum import Enum
from typing import Callable, List, Optional

from jinja2 import Template
from pydantic import BaseModel, model_validator

from ..MODELS.stack_spec import StackSpec
from ..errors import StackSpecError

logger = logging.getLogger(__name__)

NGINX_TEMPLATE = """\
server {
    listen {{ listen_port }};
    server_name {{ server_name }};
{% for route in routes %}

    location {{ route.prefix }} {
{% if route.kind == 'static' %}
        root {{ route.root }};
        index {{ route.index }};
{% if route.spa_fallback %}
        try_files $uri $uri/ /{{ route.index }};
{% else %}
        try_files $uri $uri/ =404;
{% endif %}
{% else %}
        proxy_pass http://{{ route.upstream_service }}:{{ route.upstream_port }};
        proxy_http_version 1.1;
{% if route.forward_client_headers %}
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
{% endif %}
{% endif %}
    }
{% endfor %}
}
"""


class RouteKind(str, Enum):
    STATIC = "static"
    PROXY = "proxy"


class ProxyRoute(BaseModel):
    """
    One path prefix and where requests under it go.
    """

    prefix: str
    kind: RouteKind
    root: Optional[str] = None
    index: str = "index.html"
    spa_fallback: bool = False
    upstream_service: Optional[str] = None
    upstream_port: Optional[int] = None
    forward_client_headers: bool = True

    @model_validator(mode="after")
    def _check(self) -> "ProxyRoute":
        if not self.prefix.startswith("/"):
            raise ValueError(f"route prefix {self.prefix!r} must start with '/'")
        if self.kind == RouteKind.STATIC and not self.root:
            raise ValueError(f"static route {self.prefix} needs a root")
        if self.kind == RouteKind.PROXY and not (self.upstream_service and self.upstream_port):
            raise ValueError(f"proxy route {self.prefix} needs an upstream service and port")
        return self

    def matches(self, path: str) -> bool:
        return path.startswith(self.prefix) or path + "/" == self.prefix


class ProxyConfig(BaseModel):
    """
    The routing table of the frontend's reverse proxy.
    """

    server_name: str = "_"
    listen_port: int = 80
    routes: List[ProxyRoute]

    @model_validator(mode="after")
    def _unique_prefixes(self) -> "ProxyConfig":
        prefixes = [r.prefix for r in self.routes]
        if len(prefixes) != len(set(prefixes)):
            raise ValueError("route prefixes must be unique")
        return self

    @classmethod
    def default_for(cls, backend: str = "backend", backend_port: int = 8000,
                    root: str = "/usr/share/nginx/html", api_prefix: str = "/api/",
                    listen_port: int = 80, server_name: str = "_") -> "ProxyConfig":
        """
        ``/`` serves the SPA with fallback to its index document and
        ``api_prefix`` is proxied to the backend with client headers forwarded.
        """
        return cls(
            server_name=server_name,
            listen_port=listen_port,
            routes=[
                ProxyRoute(prefix="/", kind=RouteKind.STATIC, root=root, spa_fallback=True),
                ProxyRoute(prefix=api_prefix, kind=RouteKind.PROXY,
                           upstream_service=backend, upstream_port=backend_port),
            ],
        )

    @classmethod
    def from_stack(cls, stack: StackSpec, backend: str = "backend", **kwargs) -> "ProxyConfig":
        """
        Default routes with the backend port taken from the stack declaration.

        :raises StackSpecError: If the backend is not declared or exposes no port.
        """
        svc = stack.services.get(backend)
        if svc is None:
            raise StackSpecError(f"stack declares no service {backend!r} to proxy to")
        if not svc.ports:
            raise StackSpecError(f"service {backend} exposes no port to proxy to")
        return cls.default_for(backend=backend, backend_port=svc.ports[0].container_port, **kwargs)

    def match(self, path: str) -> Optional[ProxyRoute]:
        """
        The most specific (longest prefix) route for a request path.
        """
        candidates = [r for r in self.routes if r.matches(path)]
        if not candidates:
            return None
        return max(candidates, key=lambda r: len(r.prefix))

    def resolve(self, path: str, exists: Callable[[str], bool] = lambda p: False) -> Optional[str]:
        """
        Where a request ends up: an upstream URL for proxied routes, the
        document path for static ones (the index document when the SPA
        fallback applies), or None for a 404.

        :param exists: Whether a static document exists under the root.
        """
        route = self.match(path)
        if route is None:
            return None
        if route.kind == RouteKind.PROXY:
            return f"http://{route.upstream_service}:{route.upstream_port}{path}"
        if exists(path):
            return path
        return f"/{route.index}" if route.spa_fallback else None

    def render(self) -> str:
        template = Template(NGINX_TEMPLATE, trim_blocks=True, lstrip_blocks=True)
        return template.render(
            server_name=self.server_name,
            listen_port=self.listen_port,
            routes=[r.model_dump(mode="json") for r in self.routes],
        )

    def write(self, output_path: str) -> str:
        """
        Writes the rendered configuration.

        :return: The path written.
        """
        parent = os.path.dirname(output_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render())
        logger.info("Proxy configuration written to %s", output_path)
        return output_path

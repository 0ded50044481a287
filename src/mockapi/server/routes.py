"""
MockAPI Route Table

Resolves an incoming (method, path) pair against the endpoints of one mock
API. Paths may be literal or parameterized:

- /users/{id}  (named parameter, OpenAPI style)
- /users/:id   (named parameter, express style)
- /files/*     (any single segment)
- /files/**    (any number of segments)
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern

from .models import EndpointConfig


_PARAM_PATTERN = re.compile(r'\{([A-Za-z_][A-Za-z0-9_]*)\}|:([A-Za-z_][A-Za-z0-9_]*)')


def normalize_path(path: str) -> str:
    """Strip the query string and any trailing slash (except for '/')."""
    path = path.split('?', 1)[0] or '/'
    if len(path) > 1 and path.endswith('/'):
        path = path.rstrip('/') or '/'
    return path


def compile_path(pattern: str) -> Pattern:
    """Convert an endpoint path pattern into an anchored regex."""
    segments = []
    for segment in normalize_path(pattern).split('/'):
        if segment == '**':
            segments.append('.*')
        elif segment == '*':
            segments.append('[^/]+')
        else:
            parts = []
            last = 0
            for param in _PARAM_PATTERN.finditer(segment):
                parts.append(re.escape(segment[last:param.start()]))
                name = param.group(1) or param.group(2)
                parts.append(f'(?P<{name}>[^/]+)')
                last = param.end()
            parts.append(re.escape(segment[last:]))
            segments.append(''.join(parts))
    return re.compile('^' + '/'.join(segments) + '$')


@dataclass
class RouteMatch:
    """Endpoint resolved for a request, with extracted path parameters."""

    endpoint: EndpointConfig
    params: Dict[str, str] = field(default_factory=dict)
    head_fallback: bool = False


class RouteTable:
    """
    Method+path lookup over a mock API's endpoints.

    Routes are tried in declaration order and the first match wins. A HEAD
    request with no HEAD endpoint falls back to the GET endpoint for the
    same path.
    """

    def __init__(self, endpoints: List[EndpointConfig]):
        self.endpoints = list(endpoints)
        self._build_index()

    def _build_index(self):
        """Build per-method lists of compiled routes."""
        self.index: Dict[str, List[tuple]] = {}
        for endpoint in self.endpoints:
            self.index.setdefault(endpoint.method, []).append((compile_path(endpoint.path), endpoint))

    def resolve(self, method: str, path: str) -> Optional[RouteMatch]:
        """
        Find the endpoint configured for a request.

        Args:
            method: HTTP method of the request
            path: Request path (query string is ignored)

        Returns:
            RouteMatch, or None when no endpoint is configured
        """
        method = method.upper()
        request_path = normalize_path(path)

        match = self._lookup(method, request_path)
        if match is None and method == 'HEAD':
            match = self._lookup('GET', request_path)
            if match is not None:
                match.head_fallback = True
        return match

    def _lookup(self, method: str, path: str) -> Optional[RouteMatch]:
        for regex, endpoint in self.index.get(method, []):
            found = regex.match(path)
            if found:
                return RouteMatch(endpoint=endpoint, params=found.groupdict())
        return None

    def describe(self) -> List[str]:
        """List configured routes as 'METHOD /path' strings."""
        return [endpoint.route for endpoint in self.endpoints]

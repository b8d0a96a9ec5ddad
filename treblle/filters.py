"""
Filtros de paths ignorados pela instrumentação
Rotas administrativas e blocklist (prefixos ou expressão regular)
"""
import re
from typing import Iterable, Optional, Tuple, Union

BlocklistPaths = Union[None, str, re.Pattern, Iterable[str]]


class PathBlockSet:
    """
    Conjunto imutável de paths bloqueados.

    Aceita uma lista de prefixos (`"admin"` bloqueia `/admin`, `/admin/x` e
    também `/administrator`) ou uma única expressão regular, testada com
    `search` sobre o path.
    """

    def __init__(self, blocklist_paths: BlocklistPaths = None):
        self.pattern: Optional[re.Pattern] = None
        self.prefixes: Tuple[str, ...] = ()

        if blocklist_paths is None:
            return

        if isinstance(blocklist_paths, re.Pattern):
            self.pattern = blocklist_paths
        elif isinstance(blocklist_paths, str):
            self.prefixes = (self._normalize(blocklist_paths),)
        else:
            self.prefixes = tuple(self._normalize(path) for path in blocklist_paths)

    @staticmethod
    def _normalize(path: str) -> str:
        return "/" + path.lstrip("/")

    def matches(self, path: str) -> bool:
        if self.pattern is not None:
            return self.pattern.search(path) is not None
        return any(path.startswith(prefix) for prefix in self.prefixes)

    def __bool__(self) -> bool:
        return self.pattern is not None or bool(self.prefixes)


class PathFilter:
    """Decide se uma request deve passar direto, sem captura"""

    def __init__(self, blocklist_paths: BlocklistPaths = None, ignore_admin_routes: Optional[Iterable[str]] = None):
        self.blocklist = PathBlockSet(blocklist_paths)
        self.admin_routes = frozenset(route.strip("/") for route in (ignore_admin_routes or ()))

    def is_admin_route(self, path: str) -> bool:
        if not self.admin_routes:
            return False
        segments = path.split("/")
        first_segment = segments[1] if len(segments) > 1 else ""
        return first_segment in self.admin_routes

    def skip_reason(self, path: str) -> Optional[str]:
        """Motivo para ignorar a request, ou None se deve ser capturada"""
        if self.is_admin_route(path):
            return "admin_route"
        if self.blocklist.matches(path):
            return "blocklist"
        return None

    def should_ignore(self, path: str) -> bool:
        return self.skip_reason(path) is not None

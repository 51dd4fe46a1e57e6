"""Non-blocking diagnostics collected while rendering forms and running reports."""

from __future__ import annotations

import logging
from typing import Any, Dict, List


logger = logging.getLogger("forge.diagnostics")

Issue = Dict[str, Any]


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


class DiagnosticLog:
    """Callable sink for ``on_diagnostic`` hooks; keeps every issue it sees."""

    def __init__(self, source: str | None = None) -> None:
        self.source = source
        self._issues: List[Issue] = []

    def __call__(self, item: Issue) -> None:
        self.add(item)

    def add(self, item: Issue) -> None:
        self._issues.append(dict(item))
        logger.warning(
            "diagnostic source=%s code=%s path=%s message=%s",
            self.source,
            item.get("code"),
            item.get("path"),
            item.get("message"),
        )

    def report(self, code: str, message: str, path: str | None = None, detail: dict | None = None) -> None:
        self.add(issue(code, message, path, detail))

    @property
    def issues(self) -> List[Issue]:
        return list(self._issues)

    def codes(self) -> List[str]:
        return [item.get("code") for item in self._issues]

    def clear(self) -> None:
        self._issues.clear()

    def __len__(self) -> int:
        return len(self._issues)

    def __bool__(self) -> bool:
        return bool(self._issues)

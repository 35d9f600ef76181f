"""Single-line JSON log output, enabled by ``API_STRUCTURED_LOGGING=true``.

Each line carries ``timestamp``, ``level``, ``logger`` and ``message``,
plus whichever of these the record holds:

* ``trace_id`` / ``span_id`` from :class:`TraceLoggingFilter`
* ``request`` from the access-log middleware
* ``billing`` from the checkout and webhook services
* ``tenant_id`` lifted out of either of the above for easy filtering
* ``exc_info`` as a formatted traceback
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

_CONTEXT_ATTRS: tuple[str, ...] = ("trace_id", "span_id")
_STRUCTURED_EXTRAS: tuple[str, ...] = ("request", "billing")


def _tenant_of(payload: dict[str, Any]) -> str | None:
    for key in _STRUCTURED_EXTRAS:
        section = payload.get(key)
        if isinstance(section, dict) and section.get("tenant_id"):
            return section["tenant_id"]
    return None


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update({attr: value for attr in _CONTEXT_ATTRS if (value := getattr(record, attr, None))})
        payload.update(
            {key: value for key in _STRUCTURED_EXTRAS if (value := getattr(record, key, None)) is not None}
        )

        tenant_id = _tenant_of(payload)
        if tenant_id:
            payload["tenant_id"] = tenant_id

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)

"""Error envelope and request field patterns shared by the HTTP services."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi.responses import JSONResponse

DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def error_response(
    code: str,
    message: str,
    status_code: int,
    data: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    payload = {
        "status": "error",
        "request_id": str(uuid4()),
        "code": code,
        "message": message,
        "data": data,
    }
    return JSONResponse(status_code=status_code, content=payload)

"""
Response envelope shared by the v1 endpoints.

Successful responses are wrapped as ``{success, data, timestamp,
response_time_ms}`` and carry ``Cache-Control: no-cache`` and
``X-Response-Time`` headers.  Endpoints take a start time with
``time.perf_counter()`` and pass it in so the reported time covers the
service call.
"""

import time
from typing import Any, Optional

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ecotrace_api.app.core.timeutils import to_iso


def envelope(
    data: Any,
    started: float,
    status_code: int = status.HTTP_200_OK,
    success: bool = True,
    message: Optional[str] = None,
) -> JSONResponse:
    response_time_ms = round((time.perf_counter() - started) * 1000, 2)
    body = {
        "success": success,
        "data": jsonable_encoder(data),
        "timestamp": to_iso(),
        "response_time_ms": response_time_ms,
    }
    if message:
        body["message"] = message
    return JSONResponse(
        content=body,
        status_code=status_code,
        headers={"Cache-Control": "no-cache", "X-Response-Time": f"{response_time_ms}ms"},
    )

"""Size-capped request body reader for webhook endpoints."""

from __future__ import annotations

from starlette.requests import Request

from cnchannels.errors import PayloadTooLargeError, ValidationError

MAX_WEBHOOK_BODY_SIZE = 1024 * 1024  # 1 MiB


async def read_body(request: Request, max_bytes: int = MAX_WEBHOOK_BODY_SIZE) -> bytes:
    """Read the request body, aborting once ``max_bytes`` is exceeded."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLargeError("payload too large")

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > max_bytes:
            raise PayloadTooLargeError("payload too large")
        chunks.append(chunk)

    body = b"".join(chunks)
    if not body:
        raise ValidationError("invalid payload")
    return body

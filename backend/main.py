"""FastAPI backend that wraps subtree_detector scans with NDJSON logging."""
from __future__ import annotations

import hashlib
import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from subtree_detector import FilesystemError, ScanResult, SubtreeDuplicateDetector  # noqa: E402

API_VERSION = "1.0.0"
API_ENV = os.getenv("SAMEDIRS_ENV", "dev")
API_COMPONENT = "api"

app = FastAPI(
    title="Subtree Duplicate Detector API",
    description="REST API that reports duplicate files and directory subtrees.",
    version=API_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_detector = SubtreeDuplicateDetector()
_api_logger = _detector.logger

EXPORT_DIR = Path(os.getenv("SAMEDIRS_EXPORT_DIR", Path(__file__).resolve().parent / "exports"))


def _hash_payload(payload: Dict[str, Any]) -> str:
    try:
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except TypeError:
        encoded = repr(payload)
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()[:12]


def _log_api_event(event: str, message: str, *, level: int = logging.INFO, **fields: Any) -> None:
    log_payload = {
        "event": event,
        "message": message,
        "component": API_COMPONENT,
        "version": API_VERSION,
        "env": API_ENV,
    }
    log_payload.update(fields)
    _api_logger.log(level, message, extra={"log_payload": log_payload})


def _request_fields(request: Request) -> Dict[str, Any]:
    return {
        "request_id": request.headers.get("x-request-id") or str(uuid.uuid4()),
        "route": str(request.url.path),
        "method": request.method,
    }


def _fail(fields: Dict[str, Any], start: float, message: str, status_code: int, detail: str) -> HTTPException:
    _log_api_event(
        "api_response",
        message,
        level=logging.ERROR,
        status_code=status_code,
        duration_ms=int((time.perf_counter() - start) * 1000),
        exception_type="HTTPException",
        exception_msg=detail,
        **fields,
    )
    return HTTPException(status_code=status_code, detail=detail)


class ScanRequest(BaseModel):
    paths: List[str]
    warn_unreadable: bool = False


class ScanRecord(BaseModel):
    scan_id: str
    timestamp: str
    roots: List[str]
    multi_root: bool
    groups: List[Dict[str, Any]]
    stats: Dict[str, Any]


_last_scan: Optional[ScanRecord] = None
_last_result: Optional[ScanResult] = None


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/scan")
def scan_directories(payload: ScanRequest, request: Request) -> Dict[str, Any]:
    global _last_scan, _last_result

    fields = _request_fields(request)
    start = time.perf_counter()

    _log_api_event(
        "api_request",
        "Scan request received",
        client_ip=request.client.host if request.client else "unknown",
        params_hash=_hash_payload(payload.model_dump()),
        **fields,
    )

    if not payload.paths:
        raise _fail(fields, start, "Scan request failed", 400, "At least one path is required")

    roots = [Path(path).expanduser() for path in payload.paths]
    for root in roots:
        if not root.exists():
            raise _fail(fields, start, "Scan request failed", 404, f"Path not found: {root}")

    try:
        result = _detector.scan(roots, warn_unreadable=payload.warn_unreadable)
    except FilesystemError as exc:
        raise _fail(fields, start, "Scan request failed", 400, str(exc)) from exc
    except Exception as exc:
        _log_api_event(
            "api_response",
            "Scan request failed",
            level=logging.ERROR,
            status_code=500,
            duration_ms=int((time.perf_counter() - start) * 1000),
            exception_type=exc.__class__.__name__,
            exception_msg=str(exc),
            **fields,
        )
        raise

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    response_payload = {"timestamp": timestamp, **result.to_dict()}
    _last_scan = ScanRecord(**response_payload)
    _last_result = result

    _log_api_event(
        "api_response",
        "Scan request completed",
        status_code=200,
        duration_ms=int((time.perf_counter() - start) * 1000),
        scan_id=result.scan_id,
        duplicate_groups=result.stats["total_duplicate_groups"],
        **fields,
    )

    return response_payload


@app.get("/stats")
def get_stats(request: Request) -> Dict[str, Any]:
    fields = _request_fields(request)
    start = time.perf_counter()

    _log_api_event(
        "api_request",
        "Stats request received",
        client_ip=request.client.host if request.client else "unknown",
        params_hash=_hash_payload({"query": dict(request.query_params)}),
        **fields,
    )

    if _last_scan is None:
        raise _fail(fields, start, "Stats request failed", 404, "No scan has been executed yet")

    payload = {
        "scan_id": _last_scan.scan_id,
        "timestamp": _last_scan.timestamp,
        "roots": _last_scan.roots,
        "multi_root": _last_scan.multi_root,
        "stats": _last_scan.stats,
        "duplicate_groups": len(_last_scan.groups),
    }

    _log_api_event(
        "api_response",
        "Stats request completed",
        status_code=200,
        duration_ms=int((time.perf_counter() - start) * 1000),
        scan_id=_last_scan.scan_id,
        duplicate_groups=payload["duplicate_groups"],
        **fields,
    )

    return payload


@app.get("/export")
def export_results(request: Request, format: str = Query(default="json", pattern="^(json|csv)$")) -> FileResponse:
    fields = _request_fields(request)
    start = time.perf_counter()

    _log_api_event(
        "api_request",
        "Export request received",
        client_ip=request.client.host if request.client else "unknown",
        params_hash=_hash_payload({"format": format}),
        **fields,
    )

    if _last_scan is None or _last_result is None:
        raise _fail(fields, start, "Export request failed", 404, "No scan results available to export")

    EXPORT_DIR.mkdir(parents=True, exist_ok=True)
    file_path = EXPORT_DIR / f"duplicates_{_last_scan.timestamp}.{format}"

    try:
        _detector.export_results(_last_result, output_file=file_path, format=format)
    except Exception as exc:
        _log_api_event(
            "api_response",
            "Export request failed",
            level=logging.ERROR,
            status_code=500,
            duration_ms=int((time.perf_counter() - start) * 1000),
            scan_id=_last_scan.scan_id,
            exception_type=exc.__class__.__name__,
            exception_msg=str(exc),
            **fields,
        )
        raise

    _log_api_event(
        "api_response",
        "Export request completed",
        status_code=200,
        duration_ms=int((time.perf_counter() - start) * 1000),
        scan_id=_last_scan.scan_id,
        format=format,
        **fields,
    )

    media_type = "application/json" if format == "json" else "text/csv"
    return FileResponse(path=file_path, media_type=media_type, filename=file_path.name)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=8000, reload=True)

# controller/controller_dependencies.py
from fastapi import File, HTTPException, Request, UploadFile
from fastapi_limiter.depends import RateLimiter
from config.settings import settings
from service.analysis_service import AnalysisService

# Shared by every router; tests override it through app.dependency_overrides.
rate_limiter = RateLimiter(times=settings.RATE_LIMIT_TIMES, seconds=settings.RATE_LIMIT_SECONDS)


def get_analysis_service(request: Request) -> AnalysisService:
    # Built once in the lifespan (or by the test harness) and kept on app.state.
    return request.app.state.analysis_service


def _too_large() -> HTTPException:
    # JSON envelope for 413
    return HTTPException(
        status_code=413,
        detail={
            "ok": False,
            "error": "file_too_large",
            "maxMb": settings.MAX_FILE_MB,
        },
    )


async def enforce_max_upload_size(
    request: Request, file: UploadFile = File(...)
) -> UploadFile:
    max_bytes = settings.MAX_FILE_MB * 1024 * 1024
    # Fast pre-check via Content-Length if present
    cl = request.headers.get("content-length")
    if cl and cl.isdigit() and int(cl) > max_bytes:
        raise _too_large()

    # Hard cap while reading initial bytes (works even if no Content-Length)
    blob = await file.read(max_bytes + 1)
    if len(blob) > max_bytes:
        raise _too_large()

    # Reset so the endpoint can re-read the stream
    await file.seek(0)
    return file

import os

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from auth.admin_token import get_defense_engine
from security.engine import DefenseEngine

router = APIRouter(
    tags= ["Health"]
)


@router.get("/healthz", summary="Liveness probe")
async def healthz():
    """
    Kiểm tra sống/chết cơ bản của tiến trình.
    """
    return {"status": "ok"}

@router.get("/readyz", summary="Readiness probe")
def readyz(request: Request, engine: DefenseEngine = Depends(get_defense_engine)):
    """
    Kiểm tra sẵn sàng: kho lưu bộ đếm DOS + quyền ghi thư mục upload.
    Trả 200 nếu ok, 503 nếu có bất kỳ lỗi nào.
    """
    checks = {}

    # Kiểm tra kho lưu (Redis ping / file / memory)
    checks["store"] = "ok" if engine.store.ping() else "error: unavailable"

    # Kiểm tra quyền ghi thư mục upload
    upload_directory = getattr(request.app.state, "upload_directory", None)
    if upload_directory:
        try:
            os.makedirs(upload_directory, exist_ok=True)
            probe_file = os.path.join(upload_directory, ".readyz.tmp")
            with open(probe_file, "w", encoding="utf-8") as f:
                f.write("ok")
            os.remove(probe_file)
            checks["fs"] = "ok"
        except OSError as e:
            checks["fs"] = f"error: {e.__class__.__name__}"

    ok = all(val == "ok" for val in checks.values())
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"status": "ok" if ok else "error", "checks": checks},
    )

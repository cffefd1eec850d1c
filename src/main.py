from fastapi import FastAPI# pip install "fastapi[standard]"
import uvicorn
import threading
import os
from typing import Optional
from contextlib import asynccontextmanager
from pathlib import Path
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware
from log.system_log import _rotation_thread, system_logger
from log.security_log import _rotation_thread as _security_rotation_thread
from api import file, health_check, security_admin
from controllers.file_controller import UPLOAD_DIRECTORY
from middleware.security_guard import SecurityGuardMiddleware  # # Middleware phòng thủ
from security.config import Settings, load_settings
from security.engine import DefenseEngine, build_engine
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Cổng chạy server
PORT_HOST = os.getenv("PORT_HOST", "8000")

# Ép kiểu để port là số nguyên
PORT = int(PORT_HOST)

# Các origin được phép gọi api (phân tách bằng dấu phẩy)
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

_log_threads_started = False
_log_threads_lock = threading.Lock()


def _start_log_threads():
    """
    Khởi động thread nền tạo file log cho ngày mới (log hệ thống + log bảo mật).
    Chỉ gọi 1 lần cho cả tiến trình, không gọi trong module log vì mỗi lần import sẽ mở thêm thread.
    """
    global _log_threads_started
    with _log_threads_lock:
        if _log_threads_started:
            return
        _log_threads_started = True

    threading.Thread(target=_rotation_thread, name="DailySystemLogRotationThread", daemon=True).start()
    threading.Thread(target=_security_rotation_thread, name="DailySecurityLogRotationThread", daemon=True).start()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Các câu lệnh được thực hiện khi khởi động
    _start_log_threads()
    system_logger.info("Khởi động FastAPI server")
    yield
    # Các câu lệnh sau yield được thực hiện khi kết thúc chương trình
    system_logger.info("Kết thúc FastAPI server")


def create_app(settings: Optional[Settings] = None, engine: Optional[DefenseEngine] = None,
               upload_directory: str = UPLOAD_DIRECTORY) -> FastAPI:
    """
    Tạo ứng dụng FastAPI với bộ phòng thủ đứng trước mọi endpoint.
    Thứ tự middleware (ngoài -> trong): CORS -> Session -> SecurityGuard -> router
    """
    settings = settings or load_settings()
    engine = engine or build_engine(settings)

    app = FastAPI(
        docs_url="/myapi",  # Đặt đường dẫn Swagger UI thành "/myapi"
        redoc_url=None,  # Tắt Redoc UI
        lifespan=lifespan,
    )
    app.state.defense = engine
    app.state.upload_directory = upload_directory
    Path(upload_directory).mkdir(parents=True, exist_ok=True)

    # add_middleware: middleware thêm sau sẽ nằm NGOÀI -> SessionMiddleware phải thêm sau SecurityGuard
    app.add_middleware(SecurityGuardMiddleware, engine=engine)
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret, same_site="lax")

    # CORS đứng ngoài cùng để preflight (OPTIONS) được trả lời trước khi tới bộ lọc method
    app.add_middleware(
        CORSMiddleware,
        allow_origins = ALLOWED_ORIGINS,
        allow_credentials = True,
        allow_methods = ["*"],
        allow_headers = ["*"]
    )

    # Thêm các endpoint ở đây
    app.include_router(file.router)
    app.include_router(health_check.router)
    app.include_router(security_admin.router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("__main__:app", host="0.0.0.0", port=PORT)

    # Hoặc gõ trực tiếp lệnh `fastapi dev src/main.py` để vào chế độ developer
    # Hoặc gõ trực tiếp lệnh `fastapi run src/main.py` để vào chế độ lấy máy chạy làm server

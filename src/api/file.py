from fastapi import APIRouter, Depends, File, Request, UploadFile

from auth.admin_token import get_defense_engine
from controllers.file_controller import File_Controller
from schemas.schemas import Upload_Display
from security.csrf import get_csrf_token
from security.engine import DefenseEngine


router = APIRouter(
    prefix="/file",
    tags=["File"]
)


@router.get("/form_token", summary="Lấy token CSRF cho form")
async def form_token(request: Request, engine: DefenseEngine = Depends(get_defense_engine)):
    """
    Trả token CSRF của session hiện tại.
    Gửi lại token qua input ẩn `_FORMTOKEN` hoặc header `X-CSRF-Token`; token đổi sau mỗi lần dùng
    """
    return {"token": get_csrf_token(request, engine.settings.csrf.session_key)}

@router.post("/upload/", summary="Tải tệp tin lên máy chủ", response_model=Upload_Display)
async def upload_file(request: Request, file: UploadFile = File(...),
                      engine: DefenseEngine = Depends(get_defense_engine)):
    """
    Người dùng tải tệp tin lên máy chủ, tệp được quét mã độc trước khi lưu
    """
    return await File_Controller.upload_file(
        file,
        engine=engine,
        client_ip=request.state.client_ip,
        upload_directory=getattr(request.app.state, "upload_directory", None),
    )

import os
import shutil
import tempfile
from pathlib import Path

from dotenv import load_dotenv
from fastapi import HTTPException, status
from starlette.concurrency import run_in_threadpool

from log.system_log import system_logger
from security.engine import DefenseEngine
from security.errors import ScanUnavailable
from security.file_scanner import ScanStatus

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Đường dẫn thư mục lưu trữ file
UPLOAD_DIRECTORY = os.getenv("UPLOAD_DIRECTORY", "assets/file")


class File_Controller:
    """
    Controller xử lý các api liên quan đến tệp tin
    """
    async def upload_file(file, engine: DefenseEngine, client_ip: str, upload_directory: str = None):
        """
        Tải file từ người dùng lên máy chủ:
        - Ghi ra tệp tạm (giữ phần mở rộng để đoán MIME), quét mã độc
        - Chỉ tệp SAFE mới được chuyển vào thư mục lưu trữ, tệp còn lại bị xoá
        MIME do client gửi lên không được tin, luôn tự đoán theo tên + nội dung tệp.
        """
        folder_upload = upload_directory or UPLOAD_DIRECTORY
        Path(folder_upload).mkdir(parents=True, exist_ok=True)

        # Chỉ lấy tên tệp, bỏ mọi phần đường dẫn client gửi lên
        file_name = os.path.basename((file.filename or "").replace("\\", "/"))
        if not file_name:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"Message": "Tên tệp tin không hợp lệ"},
            )

        file_location = os.path.join(folder_upload, file_name)
        if os.path.exists(file_location):
            return {
                "File_Name": file_name,
                "status": "exists",
                "stored": False,
                "Message": f"Tệp tin {file_name} đã tồn tại trên máy chủ",
            }

        suffix = os.path.splitext(file_name)[1]
        fd, tmp_path = tempfile.mkstemp(suffix=suffix, dir=folder_upload, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as buffer:
                shutil.copyfileobj(file.file, buffer)

            # Quét bằng regex trên toàn bộ nội dung tệp: chạy trong threadpool
            result = await run_in_threadpool(engine.scanner.secure_upload, tmp_path, file_location)
        except OSError as e:
            system_logger.error(f"Lỗi khi tải lên tệp tin {file_name} từ {client_ip}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"Message": f"Không thể tải lên tệp tin {file_name}"},
            )
        finally:
            # Tệp tạm còn lại nghĩa là tệp không được chấp nhận
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

        if result.status is ScanStatus.SAFE:
            system_logger.info(f"IP {client_ip} đã tải lên tệp tin: {file_location}")
            message = "Tải tệp tin thành công"
        elif result.status is ScanStatus.UNSAFE:
            system_logger.warning(f"IP {client_ip} tải lên tệp tin nghi nhiễm {file_name} (chữ ký: {result.signature})")
            message = "Tệp tin chứa mã độc, đã bị từ chối"
        else:
            error = ScanUnavailable(reason=f"Không đọc được tệp tạm của {file_name}")
            system_logger.error(f"IP {client_ip} tải lên tệp tin {file_name}: {error.reason}")
            raise HTTPException(status_code=error.status_code, detail={"Message": error.message})

        return {
            "File_Name": file_name,
            "status": result.status.value,
            "stored": result.status is ScanStatus.SAFE,
            "signature": result.signature,
            "Message": message,
        }

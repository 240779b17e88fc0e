# avatar_studio/models.py
from pydantic import BaseModel
from typing import Optional


class UploadSession(BaseModel):
    user_id: str
    username: str
    avatar_path: str
    created_at: int  # epoch millis


class FileRecord(BaseModel):
    path: str
    filename: str
    declared_mimetype: str
    detected_format: str
    size: int
    created_at: int  # epoch millis


class LoginPayload(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class UserOut(BaseModel):
    id: str
    username: str
    avatar: str


class LoginResponse(BaseModel):
    ok: bool = True
    user: UserOut
    sessionToken: str


class MeResponse(BaseModel):
    ok: bool = True
    user: UserOut


class OkResponse(BaseModel):
    ok: bool = True


class FileInfo(BaseModel):
    filename: str
    size: int
    mimetype: str


class UploadResponse(BaseModel):
    ok: bool = True
    tempUrl: str
    fileInfo: FileInfo


class ErrorResponse(BaseModel):
    code: str
    message: str

from pydantic import BaseModel, ConfigDict
from datetime import datetime

class UserCreate(BaseModel):
    username: str
    email: str
    password: str

class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    created_at: datetime

class LoginRequest(BaseModel):
    email: str
    password: str

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class FileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    filename: str
    size_bytes: int
    content_hash: str
    upload_date: datetime
    is_deduplicated: bool
    download_count: int

class SharedFileResponse(BaseModel):
    id: int
    filename: str
    size_bytes: int
    upload_date: datetime
    owner_id: int
    shared_at: datetime

class ShareCreate(BaseModel):
    target_user_id: int

class ShareResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    file_id: int
    granted_by: int
    granted_to: int
    mode: str
    granted_at: datetime

class StatsResponse(BaseModel):
    used_bytes: int
    limit_bytes: int
    remaining_bytes: int
    file_count: int
    deduplicated_bytes: int

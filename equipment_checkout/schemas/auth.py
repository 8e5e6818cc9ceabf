from typing import Optional

from pydantic import BaseModel, ConfigDict


class SignupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str
    fullName: str


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str


class ApproveUserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: Optional[str] = "teacher"

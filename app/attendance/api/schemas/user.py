# app/attendance/api/schemas/user.py
from pydantic import BaseModel
from typing import Optional


# Internal representation of JWT data
class TokenData(BaseModel):
    sub: Optional[str] = None
    role: Optional[str] = None

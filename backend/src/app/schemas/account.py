from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class UserOut(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str

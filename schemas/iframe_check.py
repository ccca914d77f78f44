from pydantic import BaseModel
from typing import Optional


class EmbedCheckResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    title: Optional[str] = None

class ProxyError(BaseModel):
    error: bool = True
    status: int
    type: str
    message: str
    statusText: Optional[str] = None
    details: Optional[str] = None

from pydantic import BaseModel
from typing import Optional


class ChatRoom(BaseModel):
    id: str
    name: str
    createdAt: int
    userCount: int = 0

class ChatMessage(BaseModel):
    id: str
    roomId: str
    username: str
    content: str
    timestamp: int

class ChatUser(BaseModel):
    username: str
    lastActive: int


# Request bodies. Fields are optional so that missing values surface as
# the API's own 400 messages instead of schema errors.

class CreateRoomRequest(BaseModel):
    name: Optional[str] = None

class CreateUserRequest(BaseModel):
    username: Optional[str] = None

class JoinLeaveRequest(BaseModel):
    roomId: Optional[str] = None
    username: Optional[str] = None

class SwitchRoomRequest(BaseModel):
    previousRoomId: Optional[str] = None
    nextRoomId: Optional[str] = None
    username: Optional[str] = None

class SendMessageRequest(BaseModel):
    roomId: Optional[str] = None
    username: Optional[str] = None
    content: Optional[str] = None

class DeleteMessageRequest(BaseModel):
    roomId: Optional[str] = None
    messageId: Optional[str] = None
    username: Optional[str] = None

class AdminRequest(BaseModel):
    username: Optional[str] = None

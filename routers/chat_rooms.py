from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from schemas.chat_rooms import (
    ChatRoom,
    ChatMessage,
    ChatUser,
    CreateRoomRequest,
    CreateUserRequest,
    JoinLeaveRequest,
    SwitchRoomRequest,
    SendMessageRequest,
    DeleteMessageRequest,
    AdminRequest,
)
from backend import RedisBackend, get_redis_backend
from constants import (
    MAX_MESSAGES_PER_ROOM,
    MAX_MESSAGE_LENGTH,
    USER_TTL_SECONDS,
    ADMIN_USERNAME,
    RATE_LIMIT_PER_DAY,
)
from rate_limit import check_and_increment, get_client_identifier
import random
import string
import time
from typing import Optional
from logging_config import get_logger

logger = get_logger(__name__)

chat_rooms_router = APIRouter(prefix="/api/chat-rooms", tags=["chat-rooms"])

RATE_LIMITED_ACTIONS = {"createUser", "createRoom"}


def generate_id(length: int = 13) -> str:
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=length))


def current_timestamp() -> int:
    return int(time.time() * 1000)


def normalize_username(username: Optional[str]) -> Optional[str]:
    if username is None:
        return None
    return username.strip().lower() or None


def _require_room_id(room_id: Optional[str]) -> str:
    if not room_id:
        raise HTTPException(status_code=400, detail="roomId query parameter is required")
    return room_id


def _parse_body(schema, payload: dict):
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Invalid request body for {schema.__name__}: {e.errors()}")
        raise HTTPException(status_code=400, detail="Invalid request body")


async def _read_json(request: Request) -> dict:
    if not await request.body():
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    return payload


# GET actions

def get_rooms(backend: RedisBackend):
    logger.info("Fetching all rooms")
    rooms = [ChatRoom(**room).model_dump() for room in backend.list_rooms()]
    logger.info(f"Returning {len(rooms)} rooms")
    return {"rooms": rooms}


def get_room(backend: RedisBackend, room_id: str):
    logger.info(f"Fetching room: {room_id}")
    room = backend.get_room(room_id)
    if not room:
        logger.warning(f"Room not found: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")
    return {"room": ChatRoom(**room).model_dump()}


def get_messages(backend: RedisBackend, room_id: str):
    logger.info(f"Fetching messages for room: {room_id}")
    if not backend.room_exists(room_id):
        logger.warning(f"Room not found: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")
    messages = backend.get_messages(room_id)
    logger.debug(f"Room {room_id} has {len(messages)} messages")
    return {"messages": [ChatMessage(**m).model_dump() for m in messages]}


def get_users(backend: RedisBackend):
    logger.info("Fetching all users")
    users = backend.list_users()
    return {"users": [ChatUser(**u).model_dump() for u in users]}


def get_room_users(backend: RedisBackend, room_id: str):
    logger.info(f"Fetching active users for room: {room_id}")
    if not backend.room_exists(room_id):
        logger.warning(f"Room not found: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")
    return {"users": backend.get_active_members(room_id)}


# POST actions

def create_room(backend: RedisBackend, body: CreateRoomRequest):
    name = (body.name or "").strip()
    if not name:
        logger.warning("Room creation failed: missing name")
        raise HTTPException(status_code=400, detail="Room name is required")

    room = ChatRoom(id=generate_id(), name=name, createdAt=current_timestamp(), userCount=0)
    backend.save_room(room.model_dump())
    logger.info(f"Room {room.id} created: name={name}")
    return JSONResponse(status_code=201, content={"room": room.model_dump()})


def create_user(backend: RedisBackend, body: CreateUserRequest):
    username = normalize_username(body.username)
    if not username:
        logger.warning("User creation failed: missing username")
        raise HTTPException(status_code=400, detail="Username is required")

    user = ChatUser(username=username, lastActive=current_timestamp())
    if not backend.create_user(user.model_dump(), ttl=USER_TTL_SECONDS):
        logger.warning(f"User creation failed: username already taken: {username}")
        raise HTTPException(status_code=409, detail="Username already taken")

    logger.info(f"User {username} created")
    return JSONResponse(status_code=201, content={"user": user.model_dump()})


def _join(backend: RedisBackend, room_id: str, username: str):
    backend.add_member(room_id, username)
    user_count = backend.refresh_room_user_count(room_id)
    backend.touch_user(username, current_timestamp(), ttl=USER_TTL_SECONDS)
    logger.info(f"User {username} joined room {room_id} ({user_count} active users)")


def _leave(backend: RedisBackend, room_id: str, username: str):
    if backend.remove_member(room_id, username):
        user_count = backend.refresh_room_user_count(room_id)
        logger.info(f"User {username} left room {room_id} ({user_count} active users)")
    else:
        logger.info(f"User {username} was not in room {room_id}")


def join_room(backend: RedisBackend, body: JoinLeaveRequest):
    room_id = body.roomId
    username = normalize_username(body.username)
    if not room_id or not username:
        raise HTTPException(status_code=400, detail="Room ID and username are required")

    if not backend.room_exists(room_id):
        logger.warning(f"Join failed: room not found: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")
    if not backend.get_user(username):
        logger.warning(f"Join failed: user not found: {username}")
        raise HTTPException(status_code=404, detail="User not found")

    _join(backend, room_id, username)
    return {"success": True}


def leave_room(backend: RedisBackend, body: JoinLeaveRequest):
    room_id = body.roomId
    username = normalize_username(body.username)
    if not room_id or not username:
        raise HTTPException(status_code=400, detail="Room ID and username are required")

    if not backend.room_exists(room_id):
        logger.warning(f"Leave failed: room not found: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")

    _leave(backend, room_id, username)
    return {"success": True}


def switch_room(backend: RedisBackend, body: SwitchRoomRequest):
    username = normalize_username(body.username)
    if not username:
        raise HTTPException(status_code=400, detail="Username is required")

    if not backend.get_user(username):
        logger.warning(f"Switch failed: user not found: {username}")
        raise HTTPException(status_code=404, detail="User not found")
    if body.nextRoomId and not backend.room_exists(body.nextRoomId):
        logger.warning(f"Switch failed: room not found: {body.nextRoomId}")
        raise HTTPException(status_code=404, detail="Room not found")

    if body.previousRoomId and body.previousRoomId != body.nextRoomId and backend.room_exists(body.previousRoomId):
        _leave(backend, body.previousRoomId, username)
    if body.nextRoomId:
        _join(backend, body.nextRoomId, username)
    return {"success": True}


def send_message(backend: RedisBackend, body: SendMessageRequest):
    room_id = body.roomId
    username = normalize_username(body.username)
    content = (body.content or "").strip()
    if not room_id or not username or not content:
        logger.warning("Message sending failed: missing required fields")
        raise HTTPException(status_code=400, detail="Room ID, username, and content are required")

    if len(content) > MAX_MESSAGE_LENGTH:
        logger.warning(f"Message too long from {username}: length {len(content)}")
        raise HTTPException(status_code=400, detail=f"Message exceeds maximum length of {MAX_MESSAGE_LENGTH} characters")

    if not backend.room_exists(room_id):
        logger.warning(f"Message sending failed: room not found: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")
    if not backend.get_user(username):
        logger.warning(f"Message sending failed: user not found: {username}")
        raise HTTPException(status_code=404, detail="User not found")

    last_message = backend.get_latest_message(room_id)
    if last_message and last_message.get("username") == username and last_message.get("content") == content:
        logger.warning(f"Duplicate message prevented from {username} in room {room_id}")
        raise HTTPException(status_code=400, detail="Duplicate message detected")

    message = ChatMessage(
        id=generate_id(),
        roomId=room_id,
        username=username,
        content=content,
        timestamp=current_timestamp(),
    )
    backend.append_message(room_id, message.model_dump(), max_messages=MAX_MESSAGES_PER_ROOM)
    backend.touch_user(username, current_timestamp(), ttl=USER_TTL_SECONDS)
    logger.info(f"Message {message.id} saved in room {room_id} from {username}")
    return JSONResponse(status_code=201, content={"message": message.model_dump()})


def delete_message(backend: RedisBackend, body: DeleteMessageRequest):
    username = normalize_username(body.username)
    if not body.roomId or not body.messageId or not username:
        raise HTTPException(status_code=400, detail="Room ID, message ID and username are required")

    if username != ADMIN_USERNAME:
        logger.warning(f"Unauthorized delete attempt by {username}")
        raise HTTPException(status_code=403, detail="Forbidden")

    if not backend.room_exists(body.roomId):
        raise HTTPException(status_code=404, detail="Room not found")
    if not backend.delete_message(body.roomId, body.messageId):
        logger.warning(f"Message not found: {body.messageId} in room {body.roomId}")
        raise HTTPException(status_code=404, detail="Message not found")

    logger.info(f"Message {body.messageId} deleted from room {body.roomId} by {username}")
    return {"success": True}


def _require_admin(username: Optional[str], action: str):
    if username != ADMIN_USERNAME:
        logger.warning(f"Unauthorized {action} attempt by {username or 'anonymous'}")
        raise HTTPException(status_code=403, detail="Forbidden - Admin access required")


def clear_all_messages(backend: RedisBackend, body: AdminRequest):
    username = normalize_username(body.username)
    _require_admin(username, "clearAllMessages")

    cleared = backend.clear_all_messages()
    logger.info(f"Messages cleared from {cleared} rooms by {username}")
    if not cleared:
        return {"success": True, "message": "No messages to clear"}
    return {"success": True, "message": f"Cleared messages from {cleared} rooms"}


def reset_user_counts(backend: RedisBackend, body: AdminRequest):
    username = normalize_username(body.username)
    _require_admin(username, "resetUserCounts")

    updated = backend.reset_user_counts()
    logger.info(f"User counts reset for {updated} rooms by {username}")
    if not updated:
        return {"success": True, "message": "No rooms to update"}
    return {"success": True, "message": f"Reset user counts for {updated} rooms"}


# DELETE actions

def delete_room(backend: RedisBackend, room_id: str):
    if not backend.room_exists(room_id):
        logger.warning(f"Delete failed: room not found: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")
    backend.delete_room(room_id)
    logger.info(f"Room {room_id} deleted")
    return {"success": True}


POST_ACTIONS = {
    "createRoom": (CreateRoomRequest, create_room),
    "createUser": (CreateUserRequest, create_user),
    "joinRoom": (JoinLeaveRequest, join_room),
    "leaveRoom": (JoinLeaveRequest, leave_room),
    "switchRoom": (SwitchRoomRequest, switch_room),
    "sendMessage": (SendMessageRequest, send_message),
    "deleteMessage": (DeleteMessageRequest, delete_message),
    "clearAllMessages": (AdminRequest, clear_all_messages),
    "resetUserCounts": (AdminRequest, reset_user_counts),
}


@chat_rooms_router.get("")
async def handle_get(
    action: Optional[str] = Query(None),
    roomId: Optional[str] = Query(None),
    backend: RedisBackend = Depends(get_redis_backend),
):
    logger.info(f"GET chat-rooms action={action} roomId={roomId}")
    try:
        if action == "getRooms":
            return get_rooms(backend)
        if action == "getRoom":
            return get_room(backend, _require_room_id(roomId))
        if action == "getMessages":
            return get_messages(backend, _require_room_id(roomId))
        if action == "getUsers":
            return get_users(backend)
        if action == "getRoomUsers":
            return get_room_users(backend, _require_room_id(roomId))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error handling GET {action}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    raise HTTPException(status_code=400, detail="Invalid action")


@chat_rooms_router.post("")
async def handle_post(
    request: Request,
    action: Optional[str] = Query(None),
    backend: RedisBackend = Depends(get_redis_backend),
):
    logger.info(f"POST chat-rooms action={action}")
    try:
        if action not in POST_ACTIONS:
            raise HTTPException(status_code=400, detail="Invalid action")

        schema, handler = POST_ACTIONS[action]
        payload = await _read_json(request)

        if action in RATE_LIMITED_ACTIONS:
            username = payload.get("username") if isinstance(payload.get("username"), str) else None
            identifier = get_client_identifier(request, username)
            result = check_and_increment(backend.redis_client, action, identifier, RATE_LIMIT_PER_DAY)
            if not result.allowed:
                raise HTTPException(status_code=429, detail="Too many requests, please slow down")

        return handler(backend, _parse_body(schema, payload))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error handling POST {action}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@chat_rooms_router.delete("")
async def handle_delete(
    action: Optional[str] = Query(None),
    roomId: Optional[str] = Query(None),
    backend: RedisBackend = Depends(get_redis_backend),
):
    logger.info(f"DELETE chat-rooms action={action} roomId={roomId}")
    try:
        if action == "deleteRoom":
            return delete_room(backend, _require_room_id(roomId))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error handling DELETE {action}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    raise HTTPException(status_code=400, detail="Invalid action")

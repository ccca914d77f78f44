import redis
import json
from typing import Optional
from constants import REDIS_URL, REDIS_HOST, REDIS_PORT
from redis_keys import (
    CHAT_ROOM_KEY,
    CHAT_MESSAGES_KEY,
    CHAT_USER_KEY,
    CHAT_ROOM_USERS_KEY,
    CHAT_ROOM_PREFIX,
    CHAT_MESSAGES_PREFIX,
    CHAT_USERS_PREFIX,
    CHAT_ROOM_USERS_PREFIX,
    IE_CACHE_KEY,
)
from logging_config import get_logger

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    """Build a client from REDIS_URL. The connection is opened on first command."""
    try:
        client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
        logger.info(f"Redis client configured for {REDIS_HOST}:{REDIS_PORT}")
        return client
    except Exception as e:
        logger.error(f"Failed to configure Redis client: {e}", exc_info=True)
        raise


def _loads(raw) -> Optional[dict]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


class RedisBackend:
    def __init__(self, client: Optional[redis.Redis] = None):
        self.redis_client = client if client is not None else create_redis_client()

    # Rooms

    def get_room(self, room_id: str) -> Optional[dict]:
        logger.debug(f"Fetching room {room_id}")
        room = _loads(self.redis_client.get(CHAT_ROOM_KEY.format(room_id=room_id)))
        if not room:
            logger.debug(f"Room {room_id} not found in Redis")
        return room

    def room_exists(self, room_id: str) -> bool:
        return bool(self.redis_client.exists(CHAT_ROOM_KEY.format(room_id=room_id)))

    def save_room(self, room: dict):
        key = CHAT_ROOM_KEY.format(room_id=room["id"])
        self.redis_client.set(key, json.dumps(room))
        logger.debug(f"Room {room['id']} saved with key: {key}")
        return room

    def _room_keys(self) -> list:
        return [
            key for key in self.redis_client.scan_iter(match=f"{CHAT_ROOM_PREFIX}*")
            if not key.startswith(CHAT_ROOM_USERS_PREFIX)
        ]

    def list_rooms(self) -> list:
        """All rooms, with userCount refreshed from active membership."""
        keys = self._room_keys()
        logger.debug(f"Found {len(keys)} room keys")
        if not keys:
            return []
        rooms = []
        for raw in self.redis_client.mget(keys):
            room = _loads(raw)
            if not room or not room.get("id"):
                continue
            room["userCount"] = self.refresh_room_user_count(room["id"])
            rooms.append(room)
        return rooms

    def delete_room(self, room_id: str):
        logger.info(f"Deleting room {room_id}")
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.delete(CHAT_ROOM_KEY.format(room_id=room_id))
        pipe.delete(CHAT_MESSAGES_KEY.format(room_id=room_id))
        pipe.delete(CHAT_ROOM_USERS_KEY.format(room_id=room_id))
        deleted = pipe.execute()
        logger.debug(f"Room {room_id} deleted: room={deleted[0]}, messages={deleted[1]}, members={deleted[2]}")
        return True

    # Messages

    def get_messages(self, room_id: str) -> list:
        raw_messages = self.redis_client.lrange(CHAT_MESSAGES_KEY.format(room_id=room_id), 0, -1)
        return [m for m in (_loads(raw) for raw in raw_messages) if m]

    def get_latest_message(self, room_id: str) -> Optional[dict]:
        return _loads(self.redis_client.lindex(CHAT_MESSAGES_KEY.format(room_id=room_id), 0))

    def append_message(self, room_id: str, message: dict, max_messages: int):
        """Push a message and trim the list to the newest max_messages entries."""
        key = CHAT_MESSAGES_KEY.format(room_id=room_id)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.lpush(key, json.dumps(message))
        pipe.ltrim(key, 0, max_messages - 1)
        pipe.execute()
        logger.debug(f"Message {message['id']} stored in {key}")
        return message

    def delete_message(self, room_id: str, message_id: str) -> bool:
        key = CHAT_MESSAGES_KEY.format(room_id=room_id)
        for raw in self.redis_client.lrange(key, 0, -1):
            message = _loads(raw)
            if message and message.get("id") == message_id:
                removed = self.redis_client.lrem(key, 1, raw)
                logger.debug(f"Removed message {message_id} from {key}: {removed}")
                return bool(removed)
        return False

    def clear_all_messages(self) -> int:
        keys = list(self.redis_client.scan_iter(match=f"{CHAT_MESSAGES_PREFIX}*"))
        if not keys:
            return 0
        pipe = self.redis_client.pipeline()
        for key in keys:
            pipe.delete(key)
        pipe.execute()
        logger.info(f"Cleared {len(keys)} message lists")
        return len(keys)

    # Users

    def create_user(self, user: dict, ttl: int) -> bool:
        """Store the user only if the username is free. Returns False on conflict."""
        key = CHAT_USER_KEY.format(username=user["username"])
        created = self.redis_client.set(key, json.dumps(user), nx=True, ex=ttl)
        logger.debug(f"Create user {user['username']}: created={bool(created)}")
        return bool(created)

    def get_user(self, username: str) -> Optional[dict]:
        return _loads(self.redis_client.get(CHAT_USER_KEY.format(username=username)))

    def touch_user(self, username: str, last_active: int, ttl: int) -> Optional[dict]:
        """Refresh lastActive and the idle TTL of an existing user."""
        key = CHAT_USER_KEY.format(username=username)
        user = {"username": username, "lastActive": last_active}
        # xx: never resurrect a user that expired in between
        if not self.redis_client.set(key, json.dumps(user), xx=True, ex=ttl):
            logger.debug(f"User {username} vanished before lastActive refresh")
            return None
        return user

    def list_users(self) -> list:
        keys = list(self.redis_client.scan_iter(match=f"{CHAT_USERS_PREFIX}*"))
        if not keys:
            return []
        return [u for u in (_loads(raw) for raw in self.redis_client.mget(keys)) if u]

    # Membership

    def add_member(self, room_id: str, username: str) -> bool:
        return bool(self.redis_client.sadd(CHAT_ROOM_USERS_KEY.format(room_id=room_id), username))

    def remove_member(self, room_id: str, username: str) -> bool:
        return bool(self.redis_client.srem(CHAT_ROOM_USERS_KEY.format(room_id=room_id), username))

    def get_active_members(self, room_id: str) -> list:
        """Members that still have a user record. Stale names are pruned from the set."""
        users_key = CHAT_ROOM_USERS_KEY.format(room_id=room_id)
        usernames = sorted(self.redis_client.smembers(users_key))
        if not usernames:
            return []
        records = self.redis_client.mget([CHAT_USER_KEY.format(username=u) for u in usernames])
        active = [u for u, record in zip(usernames, records) if record]
        stale = [u for u, record in zip(usernames, records) if not record]
        if stale:
            self.redis_client.srem(users_key, *stale)
            logger.debug(f"Pruned {len(stale)} stale members from room {room_id}")
        return active

    def refresh_room_user_count(self, room_id: str) -> int:
        user_count = len(self.get_active_members(room_id))
        room = self.get_room(room_id)
        if room and room.get("userCount") != user_count:
            room["userCount"] = user_count
            self.save_room(room)
        return user_count

    def reset_user_counts(self) -> int:
        """Empty every membership set and zero every room's userCount."""
        room_keys = self._room_keys()
        member_keys = list(self.redis_client.scan_iter(match=f"{CHAT_ROOM_USERS_PREFIX}*"))
        pipe = self.redis_client.pipeline()
        for key in member_keys:
            pipe.delete(key)
        if room_keys:
            for key, raw in zip(room_keys, self.redis_client.mget(room_keys)):
                room = _loads(raw)
                if room:
                    room["userCount"] = 0
                    pipe.set(key, json.dumps(room))
        pipe.execute()
        logger.info(f"Reset user counts for {len(room_keys)} rooms, cleared {len(member_keys)} member sets")
        return len(room_keys)

    # Time machine cache

    def get_cached_page(self, url_key: str, year: str) -> Optional[str]:
        key = IE_CACHE_KEY.format(url=url_key, year=year)
        logger.debug(f"Checking AI cache with key: {key}")
        return self.redis_client.lindex(key, 0)


redis_backend = RedisBackend()


def get_redis_backend() -> RedisBackend:
    return redis_backend

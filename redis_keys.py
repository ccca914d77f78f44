CHAT_ROOM_KEY = "chat:room:{room_id}" # room id - JSON room record
CHAT_MESSAGES_KEY = "chat:messages:{room_id}" # room id - list of JSON messages, newest first
CHAT_USER_KEY = "chat:users:{username}" # username - JSON user record with idle TTL
CHAT_ROOM_USERS_KEY = "chat:room:users:{room_id}" # room id - set of usernames

RATE_LIMIT_KEY = "ratelimit:{scope}:{identifier}:{date}" # counter, expires at end of UTC day
IE_CACHE_KEY = "ie:cache:{url}:{year}" # quoted normalized url - list of generated pages

CHAT_ROOM_PREFIX = "chat:room:"
CHAT_MESSAGES_PREFIX = "chat:messages:"
CHAT_USERS_PREFIX = "chat:users:"
CHAT_ROOM_USERS_PREFIX = "chat:room:users:"

# **Example `chat:room:{id}` value**
# - `{"id": "k3j2h1g0f9d8s", "name": "general", "createdAt": 1714000000000, "userCount": 2}`
#
# `chat:room:users:{id}` shares the `chat:room:` prefix, so a scan over
# `chat:room:*` also returns membership sets and has to skip them.

REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room name - pub/sub channel name

# **Relay envelope published on `room:channel:{room}`**
# - `payload` = outbound payload dict, delivered as-is to local members
# - `exclude` = connection id that must not receive it (sender when echo is off) or null

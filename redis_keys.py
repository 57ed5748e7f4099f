REDIS_META_KEY = "room:meta:{slug}" # room id - hash
REDIS_MEMBERS_KEY = "room:members:{slug}" # room id - set of connection IDs
REDIS_CONN_ROOMS_KEY = "conn:rooms:{connection_id}" # connection id - set of room IDs

# **Example `room:meta:{id}` hash fields**
# - `id` = `{roomId}`
# - `created_at` = ISO timestamp
# - `password_hash` = hash computed by the client (optional, absent when no password)

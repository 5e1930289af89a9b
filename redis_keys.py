REDIS_SESSION_KEY = "session:meta:{session_id}" # session id - session record hash

# **`session:meta:{id}` hash fields**
# - `id` = `{sessionId}`
# - `createdAt` = ISO timestamp
# - `joinPayload` = json string `{"type": "connect", "sessionId", "serverUrl"}`
# - `qrCode` = PNG data URL (omitted when QR rendering is off)
# TTL on the key is SESSION_TTL_SECONDS, set at creation.

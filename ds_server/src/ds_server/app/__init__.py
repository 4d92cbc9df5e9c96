"""
DevSpace (FastAPI) — README-lite

Overview
- One short-lived, isolated Docker sandbox per user session, with an interactive
  login shell streamed over a WebSocket and a continuously synchronized view of
  the sandbox workspace file tree.
- Sessions survive brief disconnects: the client reconnects with its sessionId
  inside the grace period and gets a fresh token for the new connection.
- All state is in memory; restarting the server ends every session.

Key Design Points
- One sandbox per session, owned exclusively by that session.
- Tokens are HMAC-derived from (sessionId, connectionId); every authenticated
  event carries one and is checked before any handler logic runs.
- Hardened sandboxes: no-new-privileges, tini init, capability drop, memory,
  CPU and pids ceilings, network "none" by default.
- Policy terminations: idle ceiling with a liveness ping, memory/CPU resource
  guard, disconnect grace expiry.
- Filesystem access goes through argument-vector commands inside the sandbox,
  confined to the workspace root.

Quickstart (local)
  $ python -m venv ./venv
  $ source ./venv/bin/activate
  $ pip install -e .[test]
  $ export SERVER_INSTANCE_SECRET=$(python -c 'import secrets; print(secrets.token_urlsafe(32))')
  $ devspace-server ds_server.app.main:app --host 127.0.0.1 --port 4000
- Health check: GET http://127.0.0.1:4000/health

WebSocket protocol (/ws)
- Frames: {"event": "<name>", "data": <payload>} in both directions.
- In:  workspace:init {username, sessionId?}
       terminal:input {sessionId, token, data}
       terminal:resize {sessionId, token, cols, rows}
       terminal:kill {sessionId, token}
       stats:subscribe / stats:unsubscribe {sessionId, token}
       fs:list / fs:read / fs:write / fs:createDir / fs:delete / fs:rename
         {sessionId, token, requestId?, path | from+to, content?}
       fs:downloadToken {sessionId, token, requestId?, path}
       fs:treeSimple:resync {}
       session:pong {}
- Out: workspace:ready, workspace:error {message}
       terminal:data <text>, terminal:exit {code, signal, reason}
       stats:tick {cpuPercent, memUsed, memLimit, memPercent}
       fs:<op>Result {requestId, ...}, fs:error {requestId, op, path?, message}
       fs:delta {change, path | from+to}, fs:downloadTokenResult {requestId, token}
       fs:treeSimple {version, tree, changed, reason}
       session:ping {idleSeconds, willTerminateAfterSeconds}

HTTP endpoints
- GET  /health                  status, session counts, host, version
- GET  /config                  image allow-list, network mode, limits, fsMode
- GET  /download?token=...      single-use tar download (404 unknown, 410 expired)
- POST /set-session-cookie      {sessionId, username} -> session cookies

Environment Configuration (.env support)
- .env values are consumed only for known keys and never override the process
  environment. See ds_server.app.config for the full list; the important ones:
- SERVER_INSTANCE_SECRET          # required, at least 16 characters
- FORCED_BASE_IMAGE / ALLOWLIST_IMAGES / DIGEST_REQUIRED
- FORCED_NETWORK_MODE             # default "none"
- SANDBOX_MEMORY / SANDBOX_CPUS / SANDBOX_PIDS_LIMIT
- SESSION_IDLE_MAX_MS / SESSION_IDLE_PING_MS / SESSION_IDLE_PING_TIMEOUT_MS
- RESOURCE_KILL_MEM_PERCENT / RESOURCE_KILL_CPU_PERCENT (0 disables)
- MAX_CONCURRENT_SESSIONS / MAX_SESSIONS_PER_USER (0 = unlimited)
- INPUT_MAX_TOKENS_PER_SEC / INPUT_BURST_BYTES
- SIMPLE_TREE_SCAN_MS / SIMPLE_TREE_NUDGE_DELAY_MS / SIMPLE_TREE_NUDGE_MAX_WAIT_MS

Version
- Matches pyproject: 0.1.0
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

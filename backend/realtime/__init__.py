"""
Realtime app: live ride tracking over WebSockets with an SSE mirror.

Key Components:
    - sessions.py: in-process registry of ride tracking sessions
    - relay.py: validation and fan-out of driver fixes
    - broadcast.py: sync helpers publishing to ride channel groups
    - alerts.py: speeding and battery alerts raised from fixes
    - consumers/: WebSocket ride consumer and SSE event stream

Usage:
    from realtime.broadcast import broadcast_ride_status, close_ride_tracking
    from realtime.relay import relay_driver_fix
"""

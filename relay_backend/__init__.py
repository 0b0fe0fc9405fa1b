"""
Elevator relay backend package.

This service is responsible for:
- Holding the WebSocket sessions of connected elevator relay boards.
- Routing logical commands (door open, floor select) to the right physical relay.
- Dispatching recurring robot tasks into the task queue on their schedule.

The HTTP/WebSocket server is implemented with Tornado.
"""

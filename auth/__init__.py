"""
auth — caller identity for the wearable API.

Provides:
  • signed session token verification
  • ``get_current_user_id`` FastAPI dependency
"""

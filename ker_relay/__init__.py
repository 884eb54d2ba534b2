"""
Best-effort push relay for key exchange notifications.
"""

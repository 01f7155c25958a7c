"""
dkv: versioned JSON store with change streams, dead-man triggers and notifications.
"""

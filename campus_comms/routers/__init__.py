from campus_comms.routers import broadcasts, messages, monitor, notifications, scheduled

__all__ = [
    'broadcasts',
    'messages',
    'monitor',
    'notifications',
    'scheduled',
]

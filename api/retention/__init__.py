"""
Retention module - periodic removal of expired files and owner notification.
"""

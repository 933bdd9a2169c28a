"""
Telesync - multi-device synchronization engine for the telemedicine apps.

Client side (``telesync.client``) keeps a durable local store per device and
replicates it over a WebSocket channel. Server side (``telesync.hub``) relays
mutations between the devices of a user and to everyone for global data.
"""

__version__ = "1.0.0"

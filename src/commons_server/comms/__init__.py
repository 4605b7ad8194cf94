"""Communication services: chat, direct messages, mail and forum.

All four share the content filter, the rate limiter and the moderation
registry, and report what happened on the event bus.
"""

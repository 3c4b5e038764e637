"""
chatsync: real-time chat synchronization for a tiered community chat.

Keeps a viewer's channel logs consistent across optimistic local sends,
push deliveries and poll fallbacks, tracks connection health, and routes
unread/mention badges.  :class:`chatsync.session.ChatSession` is the entry
point for clients; :mod:`chatsync.main` runs one session as a service.
"""

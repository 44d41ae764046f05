"""
Persistence layer — message log and API keys on SQLAlchemy async.

Usage:
    from database.store import MessageStore
    store = MessageStore(settings.database)
    await store.init()
    message_id = await store.log_message(jid, text, "sent", "pending")
    await store.update_message_status(message_id, "sent")
"""

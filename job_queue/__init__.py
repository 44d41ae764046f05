"""
Message Queue — Decouples request acceptance from WhatsApp delivery.

- API handlers SUBMIT private/group message jobs
- One worker per queue kind DELIVERS them through the messaging client
- Supports Redis (durable, retrying) and a bounded in-memory fallback
"""

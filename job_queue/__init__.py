"""
Job Queue — Decouples HTTP request handling from email delivery.

- Request handlers and the reminder scheduler ENQUEUE notification jobs
- Consumers CLAIM jobs per kind and run the notification processor
- Supports Redis (production), SQL (durable, no extra infrastructure)
  and an in-memory store (dev/tests)
"""

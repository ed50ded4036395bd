"""Newsletter publishing service: idempotent publish, transactional outbox, delivery worker."""

"""Transactional outbox: store, delivery sinks and the batched publisher."""

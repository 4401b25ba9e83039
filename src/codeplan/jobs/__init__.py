"""Background job orchestration: durable store, admission control and scheduling.

Jobs live in SQLite and are polled by a single in-process scheduler. The
admission controller is deliberately in-memory: it gates outbound model
requests for this process only, so its counters and cancellation tokens are
lost on restart and the scheduler reconciles stale ``running`` rows instead.
"""

"""
geofence_agent — Geofence Attendance Agent v1.2
===============================================
Architecture: sched main loop on the main thread, producers and the delivery
worker on daemon threads, a durable outbox in between.

  constants.py    → Version, intervals, timeouts, backoff, limits
  config.py       → Paths, logging, config load/save, helpers
  exceptions.py   → AgentError hierarchy
  models.py       → Coordinate, Zone, AttendanceEvent, OutboxEntry
  geo.py          → Haversine distance, containment
  zones.py        → ZoneRegistry (atomic active-zone snapshot)
  detector.py     → TransitionDetector (per-zone enter/exit edges)
  outbox.py       → EventOutbox (fsynced JSON-lines journal, backoff, dead letters)
  http_client.py  → HTTP session with retry/pooling + CA bundle
  api.py          → Server API calls (zones, attendance submit, identity)
  delivery.py     → DeliveryWorker (outbox → backend, per-zone FIFO)
  policy.py       → ZonePolicyValidator + LocalBackend (server-side checks)
  network.py      → Connectivity probe
  state.py        → AgentState dataclass (single source of truth)
  listeners.py    → LocationListeners (feed file / push → queue)
  app.py          → AgentApp (sched main loop)
  runner.py       → main() sub-commands + auto-restart wrapper
"""

from .constants import AGENT_VERSION as __version__

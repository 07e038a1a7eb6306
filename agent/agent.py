"""
Geofence Attendance Agent
=========================
Detects when the signed-in user enters or leaves an office geofence and
reports each transition to the attendance backend. Events are kept in a
local outbox until the server confirms them, so nothing is lost offline.

PRIVACY: only location samples compared against the configured zones are
processed; only enter/exit/login/logout events (with their coordinates)
are sent to the server.

Usage:
    python agent.py                      # run (tails ~/.geofence-agent/samples.jsonl)
    python agent.py run --feed gps.jsonl
    python agent.py login --lat 24.86 --lon 67.00
    python agent.py status
"""

import sys

from geofence_agent.runner import run_with_auto_restart


if __name__ == "__main__":
    sys.exit(run_with_auto_restart(sys.argv[1:]))

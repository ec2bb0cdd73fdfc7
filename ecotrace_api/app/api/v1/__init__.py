"""
Version 1 of the EcoTrace API.

Served under ``/api`` because the dashboard client addresses the
unversioned paths (``/api/dashboard/...``, ``/api/calculation/...``).
"""

"""
Endpoint subpackage for API v1.

Each module defines an APIRouter for one domain (dashboard,
calculation, activities, users, realtime).  They are aggregated in
``router.py``.
"""

"""
Pydantic schema definitions for API payloads.

``activity`` holds the calculation input and stored activity records,
``calculation`` the calculation result, validation and audit shapes,
``user`` the user records.
"""

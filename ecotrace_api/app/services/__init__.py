"""
Service layer.

Each service encapsulates the business logic of one domain.  Endpoint
handlers stay thin and delegate to the classes defined here.
"""

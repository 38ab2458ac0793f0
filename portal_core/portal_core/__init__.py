"""ClientPortal core domain layer.

Plan-tier definitions, notification routing rules, and the persistence
layer shared by the API service and background jobs.
"""

__version__ = "0.4.0"

"""EMIS event choreography core.

Multi-tenant school services (identity, student, teacher, chat) that
exchange integration events through a transactional outbox and a
partitioned broker.
"""

__version__ = "0.1.0"

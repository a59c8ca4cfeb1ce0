"""
SLA Engine Module
=================

Timers, status evaluation, escalation and work-queue views for service
orders.

Layers:
- domain: entities, value objects, pure domain services
- application: use-case services, repository interfaces, DTOs
- infrastructure: SQLAlchemy, policy file, notifications, scheduler
- interfaces: FastAPI routes
"""

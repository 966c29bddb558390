"""Business-logic layer: in-memory registries and engines, optionally mirrored to MongoDB.

- registry.py / health.py / polling.py: provisioned instances, their health machine and lease-driven polling
- metrics_engine.py / query_views.py: window aggregates, chart bucketing and tri-state query views
- alerts_service.py / alerts_evaluator.py: rule and alert stores plus the background evaluation loop
- billing_service.py / dashboards_service.py: spending limits, cost forecast and dashboard CRUD
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.

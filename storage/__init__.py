"""
Storage Package.

Persistence for the alert bridge:

- database: engine, session factory, session_scope
- models/: MonitoringConfig, ZabbixAlert, NotificationGroup, Subscriber
- repositories/: the data access layer the poller and API use
"""

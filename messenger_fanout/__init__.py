"""
Messenger delivery fan-out service.

Consumes chat events from RabbitMQ queues, manages per-user queue
subscriptions, and republishes messages to GraphQL subscribers and
Server-Sent-Event listeners.
"""

__version__ = "0.1.0"

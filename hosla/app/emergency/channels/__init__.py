"""
channels — Delivery backends for emergency notifications.

Each channel module exposes:
    async send(contact, message, urgency, ...) → DeliveryOutcome

Channels are stateless functions. Method selection and retry live in
``router.ChannelRouter``, which is the ``deliver(contact, message, urgency)``
capability handed to the dispatcher.
"""

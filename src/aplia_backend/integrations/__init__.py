"""
aplia_backend.integrations

Outbound HTTP clients, one per upstream provider.

Responsibilities:
- n8n automation webhooks (allow-listed proxy).
- Evolution WhatsApp gateway.
- Asaas billing.
"""

# Package marker.

"""
Webhook Gateway Application

FastAPI service that signs users in with Microsoft Entra ID, keeps
server-side sessions and relays authenticated chat requests to an n8n
webhook.
"""

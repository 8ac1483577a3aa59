"""Inbound webhooks: Shopify orders/create and Scan2Ship order-ready.

Each webhook is signature-verified over its raw body, optionally
deduplicated by delivery id, and handed to its orchestrator.
"""

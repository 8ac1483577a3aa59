"""Outbound clients: Scan2Ship REST and Shopify GraphQL Admin."""

"""Order and fulfillment reconciliation between Shopify and Scan2Ship.

Two at-least-once webhook channels feed this service:
- Shopify orders/create -> carrier order sync (with dead-letter quarantine)
- Scan2Ship order-ready -> Shopify fulfillment write-back

A third inbound path answers checkout-time rate requests with a static
fallback whenever the carrier backend is slow or unavailable.
"""

__version__ = "0.3.0"

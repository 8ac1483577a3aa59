"""Order sync and fulfillment write-back orchestrators."""

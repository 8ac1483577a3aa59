"""HTTP routers: carrier rates callback, admin operations, health."""

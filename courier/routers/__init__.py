"""HTTP routers exposed by the Courier API."""

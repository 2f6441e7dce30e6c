"""REST routers for the xswap server."""

"""HTTP routers and middlewares."""

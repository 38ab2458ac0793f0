"""Business services used by the API routers and the job scheduler."""

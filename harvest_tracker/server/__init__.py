"""HTTP server package: the Harvest OAuth redirect endpoint.

WHY: Harvest sends the browser back to a URL we own after the user
approves access. Slack Socket Mode gives us no HTTP surface, so this
small FastAPI app provides one.

RULES:
- Runs in the same process as the Slack bot (background thread)
- Every request is answered with plain text; no exception escapes
"""

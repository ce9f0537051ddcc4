"""
Google Integration

This package holds everything that talks to Google on behalf of a user.

Key Components:
- chain.py: Middleware chain around the shared aiohttp ClientSession (metrics, bearer
  authorization with refresh-once-on-401)
- oauth.py: Authorization code flow with PKCE, userinfo lookup and refresh-token exchange
- analytics.py: Per-request GA4 Data API and Admin API client
"""

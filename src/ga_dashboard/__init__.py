"""
GA Dashboard - Google Analytics 4 session dashboard service

This package implements a small web service that signs users in with Google, stores the
Google OAuth tokens issued to them, lets them choose a Google Analytics 4 property, and
serves session-count reports for that property.

Key Components:
- app: Web application layer with request handlers and server configuration
- google: Google OAuth 2.0 client and the Analytics Data/Admin API client
- model: Database models for users, app sessions, stored tokens and user settings

Architecture Overview:
1. Authorization Exchange:
   - User is redirected to Google with a PKCE challenge
   - The callback exchanges the authorization code for provider tokens
   - Provider tokens are written through to the token store and an app session is issued

2. Token Consumer Gate:
   - Every reporting call reads the stored provider token first
   - A missing token fails closed with a provider-unauthenticated error

3. Reporting:
   - A per-request Analytics client is built around the stored access token
   - A 401 from Google triggers a single refresh-token exchange and one retry
"""

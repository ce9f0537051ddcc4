"""
Database Models

This package defines the database models for the GA Dashboard service using SQLAlchemy ORM.

Key Models:
- base.py: Base SQLAlchemy model, common column types and dialect-aware insert
- user.py: Google users and the app sessions issued to them
- oauth.py: Login request state and stored Google tokens
- settings.py: Per-user reporting target selection
- health.py: Health monitoring gauge

Relationships:
- User: A Google identity keyed on the OpenID Connect subject
- AppSession: A signed-in browser session belonging to a user
- OAuthRequest: Temporary storage for the state and PKCE verifier of a login
- GoogleToken: The provider access/refresh token pair of a user, one row per user
- UserSettings: The GA4 property a user reports on, one row per user

Upserts are expressed as statement builders so that handlers can execute them inside their
own transactions.
"""

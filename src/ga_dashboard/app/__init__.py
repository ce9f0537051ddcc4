"""
GA Dashboard Application Layer

This package implements the web application layer for the GA Dashboard service, handling HTTP
requests and responses using the aiohttp framework. It provides handlers for Google sign-in,
the analytics JSON API, the HTML pages and internal endpoints.

Key Components:
- server.py: Web server configuration and middleware setup
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics client abstraction
- handlers/: Request handlers for different endpoints
- tasks.py: Background tasks for health monitoring and expired record cleanup
- cli.py: Logging setup and entry point

The application uses two middleware layers:
- Metrics middleware for request counts and timings
- Sentry middleware for error reporting

It provides the following main endpoints:
- Google sign-in endpoints (/auth/*)
- Analytics API endpoints (/api/analytics/*)
- Pages (/, /login, /setup, /dashboard)
- Internal endpoints (/internal/*)
"""

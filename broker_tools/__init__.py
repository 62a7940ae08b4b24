"""
Broker Tools

Clients and plumbing between the dashboard services and the Trading212 API:
cache, rate limiting, request coalescing.
"""

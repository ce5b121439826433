"""
Travel planner backend - itinerary generation and travel search behind a
resilience layer (circuit breakers, retries, caching, fallbacks, health).
"""

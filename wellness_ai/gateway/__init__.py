"""Resilient External-Service Gateway.

Provides async infrastructure for calling rate-limited, unreliable external
providers with:
  - Response Cache (fingerprint-keyed, memory LRU over a durable store)
  - Admission Controller (per-minute / per-day quotas, priority waiters)
  - Circuit Breaker (per-provider failure isolation)
  - Durability Queue (persisted FIFO replay with dead letters)
  - Provider Adapters (protocol differences)
"""

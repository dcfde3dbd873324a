"""Multi-provider LLM broker: routing, failover and margin-gated execution."""

__version__ = "0.1.0"

"""LLM extraction, cost estimation, and quality scoring."""

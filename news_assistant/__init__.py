"""
News Assistant

Answers questions about current events by retrieving relevant news articles
from a vector index and composing grounded answers with a language model,
while keeping multi-turn chat sessions in Redis.
"""

__version__ = "0.1.0"

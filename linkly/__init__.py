"""
Linkly Link Intelligence Core

Short-link resolution with asynchronous content vetting:
1. Resolves short codes through a Redis cache-aside layer with a safety gate
2. Queues newly created or edited links for background analysis
3. Fetches and normalizes destination content
4. Summarizes, tags, rates and classifies content with Claude
5. Files analyzed links into per-owner system collections
"""

__version__ = "0.1.0"

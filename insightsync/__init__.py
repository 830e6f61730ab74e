"""
InsightSync - social analytics collection and normalization.

This package contains the core pipeline for InsightSync, including:
- Rate-limited Graph API clients for Instagram and Facebook
- Per-platform metric fetchers with fallback metric sets
- A normalizer producing platform-agnostic analytics snapshots
- Initial, incremental and daily sync orchestration
- Caching, period comparison and anomaly detection

Version: 1.0.0
Author: InsightSync Team
"""

__version__ = "1.0.0"
__author__ = "InsightSync Team"
__email__ = "team@insightsync.dev"
__description__ = "Social analytics collection and normalization pipeline"

"""
Unit Tests Package for the Park Angel Pricing and Revenue Engine

Unit tests exercise one component at a time: money arithmetic, value
object validation, hierarchy resolution, rate calculation, the VIP /
discount / VAT / distribution strategies, DTOs, messaging and locks.
External brokers (Redis, Kafka, MongoDB) are mocked.
"""

import sys
from pathlib import Path

# Add the project root to Python path for imports
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

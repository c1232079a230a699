"""
dsa-master: mastery scoring and practice bookkeeping engine.

Turns quiz attempts into per-topic mastery scores, a status classification,
a trend signal and a mistake bank.

Packages:
- core: Pure scoring functions and domain records
- db: Storage interface plus in-memory and SQLAlchemy backends
- learning: Mastery update orchestrator and quiz-completion flow
- cli: Typer command line
"""

__version__ = "1.0.0"

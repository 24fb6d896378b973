"""
costgate - Budget-governed gateway to reasoning models.

Prices every model call, checks it against daily, per-task and
per-conversation budgets and keeps a persistent usage ledger.
"""

__version__ = "0.4.0"
__author__ = "costgate contributors"

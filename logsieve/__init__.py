# logsieve/__init__.py
"""
LogSieve - find the few novel lines in a failed job's logs
by comparing them against logs of known-good runs
"""

__version__ = "0.1.0"

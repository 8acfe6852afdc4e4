# tests/__init__.py
"""
LogSieve Test Suite

One module per component (tokenizer, index, model, cache, detector,
local source). Each module puts the repository root on sys.path itself,
so it also runs as a plain script: python tests/test_cache.py

Run tests with: python -m pytest tests/
"""

"""
Core business logic modules for Video Insights

This package contains the core functionality modules:
- download.py / transcribe.py: video service adapters (URL → service video → transcript)
- llm.py: chat completion adapter
- process.py / dashboard.py / categorize.py: transcript → insight dashboard
- credits.py: credit ledger
- storage.py / sqlite_store.py: persistence of jobs, users and transactions
- pipeline.py: the per-video state machine tying it all together
"""

"""
Test suite for the sticker search bot.

Test Categories:
- Unit tests: tokenizer, scoring, store, indexer, query engine, registry
- Integration tests: ingestion pipeline, bot dispatch and CLI over a real
  SQLite file
- Edge case tests: malformed input, deadlines, concurrent writers
"""

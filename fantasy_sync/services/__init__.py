"""
Services module for sync orchestration.

This module organizes services into:
- sync: task vocabulary, temporal conditions, durable queue, cascades,
  executors, triggers and the orchestrator facade
"""

"""Core components for the landing zone orchestrator.

This module contains the foundational components including AWS client
management, configuration handling, throttling retries, partition
metadata and cross-account credentials.
"""

"""
Services package for the IPTV catalog

This package contains playlist ingestion, guide storage, the per-session
catalog cache and the session registry.
"""

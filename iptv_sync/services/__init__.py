"""
Services package for IPTV Sync Service

Sync pipelines, persistence and coordination. Import submodules directly;
the parsers depend on `sync_types` from here.
"""

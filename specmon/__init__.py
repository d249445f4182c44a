"""
specmon - incremental discovery and rerun selection for describe/it spec modules.
"""
SPECMON_VERSION = "0.4.0"

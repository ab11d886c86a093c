"""
TrafficWatch - reverse-proxy access log ingestion, traffic rollups and
threat screening.
"""
__version__ = "1.0.0"

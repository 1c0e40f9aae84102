"""Semantic malware detection from function topologies, with JSON and LMDB signature stores."""

__version__ = "0.1.0"

__all__ = ["metadata", "scanner", "signature_store", "store_io", "topology"]
"""
retrovault - ROM ingestion pipeline for RetroArch libraries

Classifies, validates and deduplicates submitted ROM files, archives them
under content-addressed per-platform manifests, and promotes verified copies
into a RetroArch sync directory with playlist entries.
"""

__version__ = "0.4.0"
__author__ = "jbruns"

"""
dbmanager - database dump export orchestration

Drives mysqldump as a subprocess, streams its output inline or into cached
files, deduplicates concurrent exports and archives background results.
"""

__version__ = "1.0.0"
__author__ = "SomaTech"

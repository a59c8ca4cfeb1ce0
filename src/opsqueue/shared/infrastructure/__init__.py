"""
Shared Infrastructure
=====================

Low-level technical concerns shared by every module (logging setup).
"""

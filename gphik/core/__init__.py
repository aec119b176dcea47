# File: gphik/core/__init__.py
"""Core algorithms: kernel structures, likelihood, search, precomputation and the optimizer"""

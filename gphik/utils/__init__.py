# File: gphik/utils/__init__.py
"""Logging, numerical solvers and persistence framing"""

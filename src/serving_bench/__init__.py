"""
Serving Bench

Measures end-to-end serving performance of a containerized LLM inference server
by driving it with a load-generating client container.
"""

__version__ = "0.1.0"
__author__ = "Serving Bench Team"

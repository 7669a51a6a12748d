"""
exam_server

Competition exam answering server: intent routing, partner tool calls and
dual-path data queries behind a single ``POST /api/exam`` endpoint.
"""

__version__ = "0.1.0"

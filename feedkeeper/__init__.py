"""
Feedkeeper Backend

A FastAPI backend for a personal feed reader: fetches RSS, Atom,
YouTube, Reddit and podcast feeds on a schedule and runs automation
rules against new articles.
"""

__version__ = "1.0.0"

#!/usr/bin/env python3
"""Agent runner"""
from agent.cli import app

if __name__ == '__main__':
    # Same commands as the backapp-agent console script
    app()

"""
Entry point for running the MCP server.

Usage:
    python scripts/run_mcp_server.py
"""
from kbengine.mcp.server import mcp

if __name__ == "__main__":
    mcp.run()

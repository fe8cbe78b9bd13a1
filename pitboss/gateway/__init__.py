"""
PitBoss — Command Gateway

Line-delimited JSON front door to the remediation governor, over stdio
or TCP.
"""

from pitboss.gateway.protocol import LineBuffer, ProtocolError, Request
from pitboss.gateway.server import COMMANDS, CommandGateway

__all__ = [
    "COMMANDS",
    "CommandGateway",
    "LineBuffer",
    "ProtocolError",
    "Request",
]

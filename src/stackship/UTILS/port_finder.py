"""
Utilities for checking availability of host ports.
"""
import socket

def is_port_free(port: int, host: str = "0.0.0.0") -> bool:
    """
    Checks whether a host port can still be bound.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False

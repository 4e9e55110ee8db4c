"""Reverse-tunnel client pieces: multiplexing, SOCKS5, FTP, UDP, compression and redirection."""

__version__ = "3.5.661"

__all__ = ["ftp", "socks5", "tcp_redir", "tcpmux", "udp", "utils", "zip"]
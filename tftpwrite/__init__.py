"""Write-only TFTP server with a thread pool of lock-step transfer sessions."""

__version__ = "0.1.0"

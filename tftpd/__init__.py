__name__ = "tftpd"
__version__ = "0.1.0"

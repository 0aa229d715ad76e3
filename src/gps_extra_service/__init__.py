"""GPS extra service: relays device location and satellite status to a viewer over IPC."""

__version__ = "0.1.0"

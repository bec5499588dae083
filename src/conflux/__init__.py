"""conflux - aggregate many MCP tool servers behind one endpoint."""

__version__ = "0.1.0"

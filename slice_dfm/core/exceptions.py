# core/exceptions.py

class SliceDFMError(Exception):
    """Base class for all custom exceptions in this application."""
    pass

class ConfigurationError(SliceDFMError):
    """Exception raised for errors in configuration loading or validation."""
    pass

class FileFormatError(SliceDFMError):
    """Exception raised for unsupported or unreadable layer image files."""
    pass

class LayerStackError(SliceDFMError):
    """Exception raised for an inconsistent layer stack (bad index, mismatched raster sizes)."""
    pass

class RasterProcessingError(SliceDFMError):
    """Exception raised when a raster operation receives incompatible inputs."""
    pass

class DetectionError(SliceDFMError):
    """Exception raised when an issue detection run aborts on an internal failure."""
    pass

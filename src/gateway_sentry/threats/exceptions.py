# Threats Module - Exceptions


class ThreatAnalysisError(Exception):
    """Base class for errors raised by the threats package."""


class GeoDownloadError(ThreatAnalysisError):
    """Downloading or extracting a GeoLite2 database failed."""

    def __init__(self, edition: str, message: str):
        self.edition = edition
        super().__init__(f"{edition}: {message}")

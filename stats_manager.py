import time
from typing import Dict, List, Any, Optional

# Sources tracked in download_by_source, least recently seen dropped first
MAX_TRACKED_SOURCES = 256


class StatsManager:
    """
    Traffic counters for one server. Updated from the receive loop and the
    send operations, read by the dashboard.
    """

    def __init__(self, max_sources: int = MAX_TRACKED_SOURCES):
        self.max_sources = max_sources
        self.upload_bytes = 0
        self.download_bytes = 0
        self.packets_sent = 0
        self.packets_received = 0
        self.malformed_count = 0
        self.error_count = 0
        self.start_time = time.time()

        # Recent throughput calculation
        self.last_calc_time = time.time()
        self.last_upload_bytes = 0
        self.last_download_bytes = 0
        self.current_upload_rate = 0.0
        self.current_download_rate = 0.0

        self.download_by_source: Dict[str, int] = {}

    def add_upload(self, num_bytes: int):
        self.upload_bytes += num_bytes
        self.packets_sent += 1

    def add_download(self, num_bytes: int, source: str = "unknown"):
        self.download_bytes += num_bytes
        self.packets_received += 1
        # Re-inserting keeps the dict ordered from least to most recently seen
        total = self.download_by_source.pop(source, 0) + num_bytes
        self.download_by_source[source] = total
        while len(self.download_by_source) > self.max_sources:
            del self.download_by_source[next(iter(self.download_by_source))]

    def add_malformed(self):
        self.malformed_count += 1

    def add_error(self):
        self.error_count += 1

    def get_stats(self, peers: Optional[List[str]] = None) -> Dict[str, Any]:
        now = time.time()

        dt = now - self.last_calc_time
        if dt >= 1.0:  # Update rate every second roughly
            self.current_upload_rate = (self.upload_bytes - self.last_upload_bytes) / dt
            self.current_download_rate = (self.download_bytes - self.last_download_bytes) / dt

            self.last_upload_bytes = self.upload_bytes
            self.last_download_bytes = self.download_bytes
            self.last_calc_time = now

        peers = peers or []
        return {
            "uptime": int(now - self.start_time),
            "upload_rate": self.current_upload_rate,
            "download_rate": self.current_download_rate,
            "total_upload": self.upload_bytes,
            "total_download": self.download_bytes,
            "packets_sent": self.packets_sent,
            "packets_received": self.packets_received,
            "malformed": self.malformed_count,
            "errors": self.error_count,
            "active_peers": peers,
            "peer_count": len(peers),
            "source_distribution": dict(self.download_by_source),
        }

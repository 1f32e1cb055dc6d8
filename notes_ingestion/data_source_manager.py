"""
Data Source Manager Module

Downloads the planet notes dump into a temporary directory with retries,
SHA-256 hashing and the optional .md5 checksum published next to it.
"""

import hashlib
import logging
import os
import shutil
import tempfile
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import requests

from . import __version__

logger = logging.getLogger(__name__)

USER_AGENT = f'OSM-Notes-Ingestion/{__version__}'
REPORT_EVERY_BYTES = 100 * 1024 * 1024


class DataSourceManager:
    """Manages planet dump downloads and their integrity checks."""

    def __init__(self, config: Dict[str, Any], session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize data source manager.

        Args:
            config: Mapping with 'planet_url' and optional 'download_timeout',
                'max_retries', 'retry_delay' and 'verify_md5'
            session: HTTP session, a new one by default
            sleep: Called between download attempts
        """
        self.config = config
        self.download_timeout = config.get('download_timeout', 3600)
        self.max_retries = config.get('max_retries', 3)
        self.retry_delay = config.get('retry_delay', 5)
        self.verify_md5 = config.get('verify_md5', True)
        self.session = session or requests.Session()
        self._sleep = sleep
        self.temp_dir = None
        self.downloaded: Optional[Tuple[str, str, int]] = None

    def __enter__(self):
        self.temp_dir = tempfile.mkdtemp(prefix='planet_notes_')
        logger.debug(f"Download directory {self.temp_dir}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            logger.debug(f"Removed download directory {self.temp_dir}")
        self.temp_dir = None
        self.downloaded = None

    def download_planet_notes(self, url: Optional[str] = None) -> Tuple[str, str, int]:
        """
        Download the planet notes dump.

        Args:
            url: Dump URL, defaults to config['planet_url']

        Returns:
            Tuple of (file_path, sha256, file_size)

        Raises:
            RuntimeError: All attempts failed
        """
        if not self.temp_dir:
            raise RuntimeError("download_planet_notes() needs an open DataSourceManager context")

        download_url = url or self.config.get('planet_url')
        if not download_url:
            raise ValueError("No planet URL configured")

        file_name = os.path.basename(urlparse(download_url).path) or 'planet-notes.osn.bz2'
        target_path = os.path.join(self.temp_dir, file_name)
        logger.info(f"Downloading planet notes from {download_url}")

        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                file_hash, file_size = self._download(download_url, target_path)
                if self.verify_md5:
                    self._verify_md5(download_url, target_path)

                self.downloaded = (target_path, file_hash, file_size)
                return self.downloaded

            except (requests.RequestException, OSError, RuntimeError) as e:
                last_error = e
                logger.warning(f"Planet download attempt {attempt}/{self.max_retries} failed: {e}")
                if os.path.isfile(target_path):
                    os.unlink(target_path)
                if attempt < self.max_retries:
                    self._sleep(self.retry_delay)

        raise RuntimeError(f"Download failed after {self.max_retries} attempts. "
                           f"Last error: {last_error}")

    def _download(self, url: str, target_path: str) -> Tuple[str, int]:
        response = self.session.get(url, stream=True, timeout=self.download_timeout,
                                    headers={'User-Agent': USER_AGENT})
        response.raise_for_status()

        expected_size = int(response.headers.get('content-length') or 0)
        written = 0
        next_report = REPORT_EVERY_BYTES
        digest = hashlib.sha256()
        with open(target_path, 'wb') as f:
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                if not chunk:
                    continue
                f.write(chunk)
                digest.update(chunk)
                written += len(chunk)
                if written >= next_report:
                    logger.info(f"Downloaded {written // (1024 * 1024)} of {expected_size // (1024 * 1024)} MiB")
                    next_report += REPORT_EVERY_BYTES

        if expected_size and written != expected_size:
            raise RuntimeError(f"Truncated download: {written} of {expected_size} bytes")

        logger.info(f"Planet dump downloaded: {written:,} bytes, sha256 {digest.hexdigest()}")
        return digest.hexdigest(), written

    def _verify_md5(self, url: str, file_path: str) -> None:
        """Compare against the published .md5 file when the server has one."""
        response = self.session.get(f"{url}.md5", timeout=60, headers={'User-Agent': USER_AGENT})
        if response.status_code == 404:
            logger.info("No checksum file published, skipping MD5 verification")
            return
        response.raise_for_status()

        expected = response.text.strip().split()[0].lower() if response.text.strip() else ''
        actual = self.calculate_file_hash(file_path, algorithm='md5')
        if expected != actual:
            raise RuntimeError(f"MD5 mismatch: expected {expected}, got {actual}")
        logger.info("MD5 checksum verified")

    def get_file_info(self) -> Dict[str, Any]:
        if self.downloaded is None:
            return {}
        path, file_hash, size = self.downloaded
        return {'file_path': path, 'file_hash': file_hash, 'file_size': size,
                'exists': os.path.isfile(path)}

    @staticmethod
    def calculate_file_hash(file_path: str, algorithm: str = 'sha256') -> str:
        """
        Calculate the hash of a file.

        Args:
            file_path: Path to file
            algorithm: hashlib algorithm name

        Returns:
            str: Hash in hex format
        """
        digest = hashlib.new(algorithm)
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
        return digest.hexdigest()

    @staticmethod
    def check_url_availability(url: str, timeout: int = 30) -> Dict[str, Any]:
        """
        Check if a URL is available and get basic metadata.

        Returns:
            Dict with availability information
        """
        result = {
            'url': url,
            'available': False,
            'status_code': None,
            'content_length': None,
            'last_modified': None,
            'error_message': None
        }

        try:
            response = requests.head(url, timeout=timeout, allow_redirects=True,
                                     headers={'User-Agent': USER_AGENT})
            result['available'] = response.status_code == 200
            result['status_code'] = response.status_code
            result['last_modified'] = response.headers.get('last-modified')
            if response.headers.get('content-length'):
                result['content_length'] = int(response.headers['content-length'])

        except requests.RequestException as e:
            result['error_message'] = str(e)

        return result

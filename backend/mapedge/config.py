"""Application-wide configuration loader.

Parses environment variables (upstream table API credentials, blob storage
location, paging and image limits, broker URLs) and exposes a singleton
``settings`` object that other modules import.
"""

import os


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Settings helper that gracefully falls back to sane defaults.

    Rationale
    ---------
    When docker-compose or the hosting platform injects an environment
    variable whose value is empty (e.g. ``AIRTABLE_VIEW_NAME=""``)
    ``os.getenv(KEY, default)`` returns an empty string *not* ``None``.  We use
    the idiom

        os.getenv(KEY) or DEFAULT

    so that *falsy* values ("", None) are replaced by the specified DEFAULT.
    """

    DATABASE_URL: str = os.getenv('DATABASE_URL') or 'sqlite:///./mapedge.db'
    DB_ECHO: bool = _as_bool(os.getenv('DB_ECHO') or '0')
    CELERY_BROKER_URL: str = os.getenv('CELERY_BROKER_URL') or 'redis://broker:6379/0'
    CELERY_RESULT_BACKEND: str = os.getenv('CELERY_RESULT_BACKEND') or 'redis://broker:6379/0'

    # Upstream tabular store
    AIRTABLE_API_URL: str = (os.getenv('AIRTABLE_API_URL') or 'https://api.airtable.com/v0').rstrip('/')
    AIRTABLE_TOKEN: str = os.getenv('AIRTABLE_TOKEN') or ''
    AIRTABLE_BASE_ID: str = os.getenv('AIRTABLE_BASE_ID') or ''
    AIRTABLE_VIEW_NAME: str = os.getenv('AIRTABLE_VIEW_NAME') or ''
    AIRTABLE_TIMEOUT: float = float(os.getenv('AIRTABLE_TIMEOUT') or '30')

    NETWORKS_TABLE_NAME: str = os.getenv('NETWORKS_TABLE_NAME') or 'Networks'
    ORG_TABLE_NAME: str = os.getenv('ORG_TABLE_NAME') or 'Master List'
    RESOURCE_TABLE_NAME: str = os.getenv('RESOURCE_TABLE_NAME') or 'Resource Data'
    FIELD_LAT: str = os.getenv('FIELD_LAT') or 'Latitude'
    FIELD_LON: str = os.getenv('FIELD_LON') or 'Longitude'
    ORG_GEOJSON_FILE: str = (os.getenv('ORG_GEOJSON_FILE') or '').strip() or 'organization_map.geojson'

    # Admin bearer secret; empty means every admin call is rejected
    REGEN_TOKEN: str = os.getenv('REGEN_TOKEN') or ''

    # Storage and public URLs
    BLOB_ROOT: str = os.getenv('BLOB_ROOT') or 'data/blobs'
    PUBLIC_BASE_URL: str = (os.getenv('PUBLIC_BASE_URL') or '').rstrip('/')

    # Export job
    EXPORT_PAGE_SIZE: int = int(os.getenv('EXPORT_PAGE_SIZE') or '100')
    EXPORT_DEFAULT_MAX_PAGES: int = int(os.getenv('EXPORT_DEFAULT_MAX_PAGES') or '10')
    EXPORT_MIN_MAX_PAGES: int = int(os.getenv('EXPORT_MIN_MAX_PAGES') or '1')
    EXPORT_MAX_MAX_PAGES: int = int(os.getenv('EXPORT_MAX_MAX_PAGES') or '20')
    EXPORT_MAX_ITERATIONS: int = int(os.getenv('EXPORT_MAX_ITERATIONS') or '100')
    CHECKPOINT_TTL_MINUTES: int = int(os.getenv('CHECKPOINT_TTL_MINUTES') or '60')

    # Image cache
    IMAGE_MAX_COUNT: int = int(os.getenv('IMAGE_MAX_COUNT') or '6')
    IMAGE_FETCH_CONCURRENCY: int = int(os.getenv('IMAGE_FETCH_CONCURRENCY') or '4')
    IMAGE_RECORD_CONCURRENCY: int = int(os.getenv('IMAGE_RECORD_CONCURRENCY') or '10')
    IMAGE_RESIZE_ENABLED: bool = _as_bool(os.getenv('IMAGE_RESIZE_ENABLED') or '1')
    IMAGE_WIDTH: int = int(os.getenv('IMAGE_WIDTH') or '400')
    IMAGE_QUALITY: int = int(os.getenv('IMAGE_QUALITY') or '80')
    IMAGE_CACHE_CONTROL: str = os.getenv('IMAGE_CACHE_CONTROL') or 'public, max-age=604800, immutable'
    IMAGE_FETCH_TIMEOUT: float = float(os.getenv('IMAGE_FETCH_TIMEOUT') or '30')
    PREWARM_ON_COMPLETE: bool = _as_bool(os.getenv('PREWARM_ON_COMPLETE') or '1')
    FFMPEG_PATH: str = os.getenv('FFMPEG_PATH') or 'ffmpeg'

    # Published documents
    DOCUMENT_CACHE_CONTROL: str = os.getenv('DOCUMENT_CACHE_CONTROL') or 'public, max-age=300'
    DOCUMENT_STORE_CACHE_CONTROL: str = os.getenv('DOCUMENT_STORE_CACHE_CONTROL') or 'public, max-age=60'

    LOG_DIR: str = os.getenv('LOG_DIR') or 'backend/logs'
    LOG_LEVEL: str = (os.getenv('LOG_LEVEL') or 'INFO').upper()

    def clamp_max_pages(self, requested: int | None) -> int:
        """Clamp a requested per-step page budget into the configured range."""
        if requested is None:
            requested = self.EXPORT_DEFAULT_MAX_PAGES
        return max(self.EXPORT_MIN_MAX_PAGES, min(self.EXPORT_MAX_MAX_PAGES, int(requested)))


settings = Settings()

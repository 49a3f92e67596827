from .blobs import BlobRef, CacheEntry
from .accounts import StorageAccount
from .assets import Asset, AssetStatus, ASSET_CATEGORIES
from .segments import Segment
from .jobs import ConversionJob, JobStatus

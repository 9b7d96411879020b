"""
Configure the logger
"""

import logging
from core.config import get_settings

logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# boto3 logs every request at INFO/DEBUG; keep it out of the service log
for noisy in ("botocore", "boto3", "s3transfer", "urllib3", "opensearch"):
    logging.getLogger(noisy).setLevel(logging.WARNING)

logger = logging.getLogger("filevault")

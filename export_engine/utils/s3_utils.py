# Standard library imports
from typing import Optional

# Third party imports
import boto3
from botocore.exceptions import BotoCoreError, ClientError

# Local imports
from export_engine.core.config import settings
from export_engine.utils.logger import get_logger

logger = get_logger(__name__)


class S3Utils:
    """Utility class for interacting with s3"""
    def __init__(self, s3_client=None, bucket_name: Optional[str] = None):
        """Initialize S3 client with AWS credentials"""
        self.s3_client = s3_client or boto3.client(
            's3',
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region
        )
        self.bucket_name = bucket_name or settings.s3_bucket_name

    def upload_local_file(self, file_path: str, key: str, content_type: Optional[str] = None) -> bool:
        """
        Upload a local file to S3

        Args:
            file_path: Path of the local file to upload
            key: S3 key (path) where the file will be stored
            content_type: Optional content type of the file

        Returns:
            bool: True if upload was successful, False otherwise
        """
        try:
            extra_args = {}
            if content_type:
                extra_args['ContentType'] = content_type

            with open(file_path, "rb") as file_obj:
                self.s3_client.upload_fileobj(
                    file_obj,
                    self.bucket_name,
                    key,
                    ExtraArgs=extra_args
                )
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error("Error uploading file to S3", key=key, error=str(e))
            return False

    def generate_presigned_url(self, key: str, expiration: int = 3600) -> Optional[str]:
        """
        Generate a presigned URL for temporary access to an S3 object

        Args:
            key: S3 key (path) of the file
            expiration: URL expiration time in seconds (default: 1 hour)

        Returns:
            str: Presigned URL if successful, None otherwise
        """
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': self.bucket_name,
                    'Key': key
                },
                ExpiresIn=expiration
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Error generating presigned URL", key=key, error=str(e))
            return None

    def delete_file(self, key: str) -> bool:
        """
        Delete a file from S3

        Args:
            key: S3 key (path) of the file to delete

        Returns:
            bool: True if deletion was successful, False otherwise
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error("Error deleting file from S3", key=key, error=str(e))
            return False

    def file_exists(self, key: str) -> bool:
        """
        Check whether an object exists

        Returns:
            bool: True if the object exists, False if S3 answers 404

        Raises:
            ClientError: for any error other than a missing key
        """
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            # A '404' Not Found error is common and not a system failure
            if e.response.get('Error', {}).get('Code') in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise

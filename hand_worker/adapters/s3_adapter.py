"""
AWS S3 adapter for blob storage.

Drives S3 multipart uploads as a resumable, strictly ordered chunk
protocol: one part per chunk, part N+1 only after part N is acknowledged.
"""

import boto3
import logging
from typing import Optional, Dict, Any, List
from botocore.exceptions import BotoCoreError, ClientError

from .base import BlobStorageAdapter
from ..errors import AuthorizationError, ChunkUploadError
from ..models import Chunk, UploadSession

logger = logging.getLogger("hand_worker")

AUTH_ERROR_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "403",
}


def _raise_for_client_error(e: ClientError, action: str) -> None:
    code = e.response.get('Error', {}).get('Code', '')
    if code in AUTH_ERROR_CODES:
        raise AuthorizationError(f"S3 rejected credentials during {action}: {code}") from e
    raise ChunkUploadError(f"S3 error during {action}: {e}") from e


class S3BlobStorageAdapter(BlobStorageAdapter):
    """AWS S3 implementation of blob storage adapter"""

    def __init__(self, bucket: str, region: str = "us-east-1", prefix: str = "videos/"):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.s3 = None

    def connect(self):
        """Initialize S3 client"""
        try:
            self.s3 = boto3.client('s3', region_name=self.region)
            logger.info(f"S3 storage connected to bucket: {self.bucket}")
        except Exception as e:
            logger.error(f"Failed to connect to S3: {e}")
            raise

    def _key(self, destination: str) -> str:
        return f"{self.prefix}{destination.lstrip('/')}"

    def initiate_upload(self, destination: str, total_size: int, content_type: str) -> UploadSession:
        """Create a multipart upload; its UploadId is the resume token"""
        key = self._key(destination)
        try:
            response = self.s3.create_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                ContentType=content_type
            )
        except ClientError as e:
            _raise_for_client_error(e, "create_multipart_upload")
        except BotoCoreError as e:
            raise ChunkUploadError(f"S3 unreachable during create_multipart_upload: {e}") from e

        logger.info(f"Started multipart upload {response['UploadId']} for s3://{self.bucket}/{key}")
        return UploadSession(
            destination=destination,
            resume_token=response['UploadId'],
            total_size=total_size,
            content_type=content_type
        )

    def resume_upload(self, destination: str, resume_token: str, total_size: int,
                      content_type: str) -> UploadSession:
        session = UploadSession(
            destination=destination,
            resume_token=resume_token,
            total_size=total_size,
            content_type=content_type
        )
        self.committed_offset(session)
        logger.info(f"Resuming multipart upload {resume_token} at byte {session.committed_bytes}")
        return session

    def committed_offset(self, session: UploadSession) -> int:
        """List acknowledged parts and count the contiguous prefix starting at part 1"""
        key = self._key(session.destination)
        parts: List[Dict[str, Any]] = []
        marker: Optional[int] = None

        try:
            while True:
                kwargs = {'Bucket': self.bucket, 'Key': key, 'UploadId': session.resume_token}
                if marker is not None:
                    kwargs['PartNumberMarker'] = marker
                response = self.s3.list_parts(**kwargs)
                parts.extend(response.get('Parts', []))
                if not response.get('IsTruncated'):
                    break
                marker = response.get('NextPartNumberMarker')
        except ClientError as e:
            _raise_for_client_error(e, "list_parts")
        except BotoCoreError as e:
            raise ChunkUploadError(f"S3 unreachable during list_parts: {e}") from e

        parts.sort(key=lambda p: p['PartNumber'])
        committed: List[Dict[str, Any]] = []
        for expected_number, part in enumerate(parts, start=1):
            if part['PartNumber'] != expected_number:
                break
            committed.append({'PartNumber': part['PartNumber'], 'ETag': part['ETag'], 'Size': part['Size']})

        session.parts = committed
        session.committed_bytes = sum(p['Size'] for p in committed)
        return session.committed_bytes

    def upload_chunk(self, session: UploadSession, chunk: Chunk, data: bytes) -> None:
        """Upload one part; part numbers are 1-based chunk indexes"""
        if chunk.offset != session.committed_bytes:
            raise ChunkUploadError(
                f"Chunk {chunk.index} starts at {chunk.offset}, remote offset is {session.committed_bytes}"
            )

        part_number = chunk.index + 1
        try:
            response = self.s3.upload_part(
                Bucket=self.bucket,
                Key=self._key(session.destination),
                PartNumber=part_number,
                UploadId=session.resume_token,
                Body=data
            )
        except ClientError as e:
            _raise_for_client_error(e, f"upload_part {part_number}")
        except BotoCoreError as e:
            raise ChunkUploadError(f"S3 unreachable during upload_part {part_number}: {e}") from e

        session.parts.append({'PartNumber': part_number, 'ETag': response['ETag'], 'Size': len(data)})
        session.committed_bytes += len(data)

    def finalize(self, session: UploadSession) -> str:
        """Complete the multipart upload and return the object URI"""
        key = self._key(session.destination)
        try:
            if session.parts:
                self.s3.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=session.resume_token,
                    MultipartUpload={
                        'Parts': [{'PartNumber': p['PartNumber'], 'ETag': p['ETag']} for p in session.parts]
                    }
                )
            else:
                # S3 refuses to complete a multipart upload with no parts
                self.s3.put_object(Bucket=self.bucket, Key=key, Body=b"", ContentType=session.content_type)
                self.s3.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=session.resume_token)
        except ClientError as e:
            _raise_for_client_error(e, "complete_multipart_upload")
        except BotoCoreError as e:
            raise ChunkUploadError(f"S3 unreachable during complete_multipart_upload: {e}") from e

        uri = f"s3://{self.bucket}/{key}"
        logger.info(f"Finalized {uri} ({session.committed_bytes} bytes, {len(session.parts)} parts)")
        return uri

    def abort(self, session: UploadSession) -> None:
        """Abort the multipart upload so orphaned parts are released"""
        try:
            self.s3.abort_multipart_upload(
                Bucket=self.bucket,
                Key=self._key(session.destination),
                UploadId=session.resume_token
            )
            logger.info(f"Aborted multipart upload {session.resume_token}")
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                f"Failed to abort multipart upload {session.resume_token}: {e}. "
                "Orphaned parts may remain in S3 bucket."
            )

    def media_url(self, uri: str, expires_in: int = 3600) -> str:
        """Presigned GET URL for an s3:// URI"""
        if not uri.startswith("s3://"):
            return uri
        bucket, _, key = uri[len("s3://"):].partition('/')
        try:
            return self.s3.generate_presigned_url(
                'get_object',
                Params={'Bucket': bucket, 'Key': key},
                ExpiresIn=expires_in
            )
        except ClientError as e:
            _raise_for_client_error(e, "generate_presigned_url")

    def close(self):
        """Close S3 connection"""
        self.s3 = None
        logger.info("S3 storage connection closed")

"""Amazon S3 state backend."""

import boto3
from botocore.exceptions import ClientError

from driftplan.errors import StateError
from driftplan.state.store import StateStore


class S3StateStore(StateStore):
    """Stores state as a single JSON object in an S3 bucket."""

    def __init__(self, bucket: str, key: str, region: str | None = None):
        super().__init__()
        self.bucket = bucket
        self.key = key
        self._client = boto3.client("s3", **({"region_name": region} if region else {}))

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    def _read(self) -> str | None:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=self.key)
        except ClientError as exc:
            if exc.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return None
            raise StateError(f"{self.location}: {exc}") from exc
        return response["Body"].read().decode("utf-8")

    def _write(self, payload: str) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=self.key,
                Body=payload.encode("utf-8"),
                ContentType="application/json",
                ServerSideEncryption="AES256",
            )
        except ClientError as exc:
            raise StateError(f"{self.location}: {exc}") from exc

from __future__ import annotations

import json
import os
from typing import Iterator, List, Optional
from urllib.parse import quote, unquote

import boto3
import structlog
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from .models import UserRecord


LOGGER = structlog.get_logger(__name__)

# Environment variable names for convenience configuration
ENV_BUCKET = "SCHOOLPAY_STATE_BUCKET"
ENV_PREFIX = "SCHOOLPAY_STATE_PREFIX"
ENV_FERNET_KEY = "SCHOOLPAY_FERNET_KEY"

DEFAULT_PREFIX = "users/"


class UserStoreError(RuntimeError):
    """A stored record could not be decrypted or parsed."""


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a urlsafe base64-encoded 32-byte key."""
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _dump_record_json(record: UserRecord) -> bytes:
    return json.dumps(
        record.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def _load_record_json(data: bytes) -> UserRecord:
    raw = json.loads(data.decode("utf-8"))
    return UserRecord.model_validate(raw)


class S3UserStore:
    """
    S3-backed key-value store of `UserRecord`s, one encrypted object per user.

    Usage
    - `load(user_id)` returns the stored record, or a fresh one on first contact.
    - `save(record)` overwrites the user's object (last write wins).
    - `delete(user_id)` removes it; `user_ids()` lists every stored user.
    - `guardians()` yields the ids of users with at least one linked student.

    Environment variables (optional)
    - `SCHOOLPAY_STATE_BUCKET`: bucket holding the records
    - `SCHOOLPAY_STATE_PREFIX`: key prefix (default "users/")
    - `SCHOOLPAY_FERNET_KEY`:   urlsafe base64-encoded key for Fernet
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        fernet_key: str | bytes,
        prefix: str = DEFAULT_PREFIX,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix
        self._fernet = _to_fernet(fernet_key)

    @classmethod
    def from_env(cls) -> "S3UserStore":
        bucket = os.environ.get(ENV_BUCKET)
        fkey = os.environ.get(ENV_FERNET_KEY)
        if not bucket or not fkey:
            missing = [name for name, val in [(ENV_BUCKET, bucket), (ENV_FERNET_KEY, fkey)] if not val]
            raise RuntimeError(
                f"Missing required environment variables for user store: {', '.join(missing)}"
            )
        return cls(bucket=bucket, fernet_key=fkey, prefix=os.environ.get(ENV_PREFIX) or DEFAULT_PREFIX)

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}{quote(user_id, safe='')}.json"

    def load(self, user_id: str) -> UserRecord:
        """Read and decrypt the user's record.

        Raises:
        - UserStoreError if decryption fails or content is invalid.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=self._key(user_id))
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return UserRecord.new(user_id)
            raise

        body = resp["Body"].read()
        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise UserStoreError(f"Failed to decrypt record for {user_id}") from ex
        try:
            return _load_record_json(decrypted)
        except ValueError as ex:
            raise UserStoreError(f"Failed to parse record for {user_id}") from ex

    def save(self, record: UserRecord) -> None:
        ciphertext = self._fernet.encrypt(_dump_record_json(record))
        self._s3.put_object(
            Bucket=self._bucket,
            Key=self._key(record.user_id),
            Body=ciphertext,
            ContentType="application/octet-stream",
        )

    def delete(self, user_id: str) -> None:
        self._s3.delete_object(Bucket=self._bucket, Key=self._key(user_id))

    def user_ids(self) -> List[str]:
        ids: List[str] = []
        kwargs = {"Bucket": self._bucket, "Prefix": self._prefix}
        while True:
            resp = self._s3.list_objects_v2(**kwargs)
            for obj in resp.get("Contents", []):
                key = obj["Key"]
                if key.endswith(".json"):
                    ids.append(unquote(key[len(self._prefix):-len(".json")]))
            if not resp.get("IsTruncated"):
                return ids
            kwargs["ContinuationToken"] = resp["NextContinuationToken"]

    def guardians(self) -> Iterator[str]:
        for user_id in self.user_ids():
            try:
                record = self.load(user_id)
            except UserStoreError as exc:
                LOGGER.warning("user-store unreadable_record", user_id=user_id, error=str(exc))
                continue
            if record.is_guardian:
                yield user_id


__all__ = ["S3UserStore", "UserStoreError"]

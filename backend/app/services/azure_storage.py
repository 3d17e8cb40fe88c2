"""Backends de Azure Storage para el pipeline.

- `TableJobStore`: jobs en Azure Table Storage. El ETag de cada entidad es
  la versión del job; las actualizaciones usan `MatchConditions.IfNotModified`
  y un 412 se traduce a VersionConflictError.
- `StorageWorkQueue`: Azure Storage Queues con mensajes de texto en base64
  (el formato que esperan los triggers de Functions).
- `BlobArtifactStore`: imágenes en un contenedor de blobs, con URLs SAS de
  sólo lectura.

Funciona igual contra Azure real y contra Azurite
(`UseDevelopmentStorage=true`).
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from azure.core import MatchConditions
from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.data.tables import TableClient, UpdateMode
from azure.storage.blob import (
    BlobSasPermissions,
    ContainerClient,
    ContentSettings,
    generate_blob_sas,
)
from azure.storage.queue import (
    QueueClient,
    TextBase64DecodePolicy,
    TextBase64EncodePolicy,
)

from app.core.enums import JobStatus
from app.core.exceptions import (
    JobAlreadyExistsError,
    JobNotFoundError,
    VersionConflictError,
)
from app.models.job import Job, utc_now
from app.services.artifact_store import ArtifactStore
from app.services.job_store import JobMutator, JobStore
from app.services.work_queue import QueueMessage, WorkQueue

logger = logging.getLogger(__name__)

JOBS_PARTITION_KEY = "jobs"
STALE_JOBS_FILTER = (
    "PartitionKey eq @pk and LastUpdatedUtc lt @cutoff"
    " and (Status eq @created or Status eq @processing)"
)

# Credenciales públicas y bien conocidas del emulador Azurite
DEV_STORAGE_ACCOUNT = "devstoreaccount1"
DEV_STORAGE_KEY = (
    "Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw=="
)
DEV_BLOB_ENDPOINT = "http://127.0.0.1:10000/devstoreaccount1"


@dataclass(frozen=True)
class StorageAccountInfo:
    account_name: str
    account_key: str
    blob_endpoint: str


def parse_storage_connection_string(connection_string: str) -> StorageAccountInfo:
    """Extrae cuenta, clave y endpoint de blobs de una cadena de conexión."""
    if connection_string.strip().lower() == "usedevelopmentstorage=true":
        return StorageAccountInfo(DEV_STORAGE_ACCOUNT, DEV_STORAGE_KEY, DEV_BLOB_ENDPOINT)

    parts: Dict[str, str] = {}
    for part in connection_string.split(";"):
        if "=" not in part:
            continue
        # La clave de cuenta puede terminar en "=": sólo partimos en el primero
        name, value = part.split("=", 1)
        parts[name.strip().lower()] = value.strip()

    account_name = parts.get("accountname")
    account_key = parts.get("accountkey")
    if not account_name or not account_key:
        raise ValueError("Storage connection string does not contain account name/key.")

    blob_endpoint = parts.get("blobendpoint")
    if not blob_endpoint:
        protocol = parts.get("defaultendpointsprotocol", "https")
        suffix = parts.get("endpointsuffix", "core.windows.net")
        blob_endpoint = f"{protocol}://{account_name}.blob.{suffix}"
    return StorageAccountInfo(account_name, account_key, blob_endpoint.rstrip("/"))


# ---------- JobStore sobre Azure Table Storage ----------


def job_to_entity(job: Job) -> Dict[str, Any]:
    return {
        "PartitionKey": JOBS_PARTITION_KEY,
        "RowKey": job.id,
        "Status": job.status.value,
        "TotalStations": job.total_units,
        "ProcessedStations": job.processed_units,
        "FailedStations": job.failed_units,
        "FanoutStarted": job.fanout_started,
        "ErrorMessage": job.error_message or "",
        "CreatedUtc": job.created_at,
        "LastUpdatedUtc": job.updated_at,
    }


def entity_to_job(entity: Any) -> Job:
    metadata = getattr(entity, "metadata", None) or {}
    return Job(
        id=entity["RowKey"],
        status=JobStatus(entity.get("Status") or JobStatus.CREATED.value),
        total_units=entity.get("TotalStations") or 0,
        processed_units=entity.get("ProcessedStations") or 0,
        failed_units=entity.get("FailedStations") or 0,
        fanout_started=bool(entity.get("FanoutStarted", False)),
        error_message=entity.get("ErrorMessage") or None,
        created_at=entity.get("CreatedUtc") or utc_now(),
        updated_at=entity.get("LastUpdatedUtc") or utc_now(),
        version=metadata.get("etag"),
    )


class TableJobStore(JobStore):
    def __init__(self, table_client: TableClient) -> None:
        self.table_client = table_client

    @classmethod
    def from_connection_string(cls, connection_string: str, table_name: str) -> "TableJobStore":
        client = TableClient.from_connection_string(connection_string, table_name=table_name)
        try:
            client.create_table()
            logger.info("Created table %s", table_name)
        except ResourceExistsError:
            logger.debug("Table already exists: %s", table_name)
        return cls(client)

    def create(self, job: Job) -> Job:
        try:
            metadata = self.table_client.create_entity(entity=job_to_entity(job))
        except ResourceExistsError as e:
            raise JobAlreadyExistsError(job.id) from e
        created = job.model_copy()
        created.version = (metadata or {}).get("etag")
        return created

    def get(self, job_id: str) -> Job:
        try:
            entity = self.table_client.get_entity(
                partition_key=JOBS_PARTITION_KEY, row_key=job_id
            )
        except ResourceNotFoundError as e:
            raise JobNotFoundError(job_id) from e
        return entity_to_job(entity)

    def conditional_update(
        self, job_id: str, mutator: JobMutator, expected_version: Optional[str]
    ) -> Job:
        # La tabla sólo compara ETags: el mutador se aplica sobre una lectura
        # fresca y, si la versión ya no coincide, el conflicto se detecta aquí
        # sin esperar al 412
        current = self.get(job_id)
        if current.version != expected_version:
            raise VersionConflictError(job_id, expected_version)

        candidate = mutator(current.model_copy(deep=True))
        current.check_successor(candidate)
        candidate.updated_at = utc_now()

        try:
            metadata = self.table_client.update_entity(
                entity=job_to_entity(candidate),
                mode=UpdateMode.REPLACE,
                etag=expected_version,
                match_condition=MatchConditions.IfNotModified,
            )
        except ResourceNotFoundError as e:
            raise JobNotFoundError(job_id) from e
        except ResourceModifiedError as e:
            raise VersionConflictError(job_id, expected_version) from e
        except HttpResponseError as e:
            if e.status_code == 412:
                raise VersionConflictError(job_id, expected_version) from e
            raise

        candidate.version = (metadata or {}).get("etag")
        return candidate

    def list_jobs(self, top: int = 50) -> List[Job]:
        entities = self.table_client.query_entities(
            query_filter="PartitionKey eq @pk", parameters={"pk": JOBS_PARTITION_KEY}
        )
        jobs = [entity_to_job(entity) for entity in entities]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:top]

    def list_stale(self, cutoff: datetime, top: int = 200) -> List[Job]:
        # El filtro lo resuelve el servicio: sólo viajan los jobs atascados
        entities = self.table_client.query_entities(
            query_filter=STALE_JOBS_FILTER,
            parameters={
                "pk": JOBS_PARTITION_KEY,
                "cutoff": cutoff,
                "created": JobStatus.CREATED.value,
                "processing": JobStatus.PROCESSING.value,
            },
        )
        jobs = [entity_to_job(entity) for entity in entities]
        jobs.sort(key=lambda j: j.updated_at)
        return jobs[:top]


# ---------- WorkQueue sobre Azure Storage Queues ----------


class StorageWorkQueue(WorkQueue):
    def __init__(self, queue_client: QueueClient, name: str) -> None:
        self.queue_client = queue_client
        self.name = name

    @classmethod
    def from_connection_string(cls, connection_string: str, queue_name: str) -> "StorageWorkQueue":
        client = QueueClient.from_connection_string(
            connection_string,
            queue_name,
            message_encode_policy=TextBase64EncodePolicy(),
            message_decode_policy=TextBase64DecodePolicy(),
        )
        try:
            client.create_queue()
            logger.info("Created queue %s", queue_name)
        except ResourceExistsError:
            logger.debug("Queue already exists: %s", queue_name)
        return cls(client, queue_name)

    def enqueue(self, body: str) -> str:
        sent = self.queue_client.send_message(body)
        return sent.id

    def receive(self, max_messages: int = 1, visibility_timeout: int = 300) -> List[QueueMessage]:
        pages = self.queue_client.receive_messages(
            messages_per_page=max_messages, visibility_timeout=visibility_timeout
        )
        return [
            QueueMessage(
                id=msg.id,
                body=msg.content,
                dequeue_count=msg.dequeue_count or 1,
                receipt=msg.pop_receipt,
            )
            for msg in itertools.islice(pages, max_messages)
        ]

    def delete(self, message: QueueMessage) -> bool:
        try:
            self.queue_client.delete_message(message.id, pop_receipt=message.receipt)
        except ResourceNotFoundError:
            return False
        return True

    def release(self, message: QueueMessage, delay: int = 0) -> bool:
        try:
            self.queue_client.update_message(
                message.id, pop_receipt=message.receipt, visibility_timeout=delay
            )
        except ResourceNotFoundError:
            return False
        return True

    def approximate_count(self) -> int:
        return self.queue_client.get_queue_properties().approximate_message_count or 0


# ---------- ArtifactStore sobre Blob Storage ----------


class BlobArtifactStore(ArtifactStore):
    def __init__(
        self,
        container_client: ContainerClient,
        account: StorageAccountInfo,
        sas_expiry_minutes: int = 60,
    ) -> None:
        self.container_client = container_client
        self.account = account
        self.sas_expiry_minutes = sas_expiry_minutes

    @classmethod
    def from_connection_string(
        cls, connection_string: str, container_name: str, sas_expiry_minutes: int = 60
    ) -> "BlobArtifactStore":
        client = ContainerClient.from_connection_string(connection_string, container_name)
        try:
            client.create_container()
            logger.info("Created container %s", container_name)
        except ResourceExistsError:
            logger.debug("Container already exists: %s", container_name)
        return cls(client, parse_storage_connection_string(connection_string), sas_expiry_minutes)

    def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> None:
        self.container_client.upload_blob(
            name=key,
            data=data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type),
        )

    def get(self, key: str) -> bytes:
        try:
            return self.container_client.download_blob(key).readall()
        except ResourceNotFoundError as e:
            raise KeyError(key) from e

    def list(self, prefix: str = "") -> List[str]:
        return sorted(blob.name for blob in self.container_client.list_blobs(name_starts_with=prefix))

    def url_for(self, key: str) -> str:
        container_name = self.container_client.container_name
        sas = generate_blob_sas(
            account_name=self.account.account_name,
            container_name=container_name,
            blob_name=key,
            account_key=self.account.account_key,
            permission=BlobSasPermissions(read=True),
            expiry=utc_now() + timedelta(minutes=self.sas_expiry_minutes),
        )
        return f"{self.account.blob_endpoint}/{container_name}/{quote(key)}?{sas}"

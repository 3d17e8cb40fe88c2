"""Carga de configuración de la aplicación.

Usa `pydantic-settings` para leer valores desde `.env` o variables de
entorno. Sólo el borde de la aplicación (API y `pipeline_service`) lee estos
valores; los componentes del pipeline reciben lo que necesitan por
constructor.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from app.core.enums import StatusReadModel, StorageBackend


class Settings(BaseSettings):
    """Contenedor tipado para todas las opciones configurables."""

    app_name: str = "Weather Imaging API"
    environment: str = "development"
    log_level: str = "INFO"

    # Directorio base para artefactos cuando el backend es `local`
    data_dir: Path = Path("data/jobs")

    # CORS
    allowed_origins: list[str] = ["*"]
    allow_credentials: bool = False

    # Si se define, POST /jobs/start exige la cabecera x-api-key
    api_key: str | None = None

    # Almacenamiento: memory (tests/dev), local (disco) o azure
    storage_backend: StorageBackend = StorageBackend.MEMORY
    storage_connection_string: str = "UseDevelopmentStorage=true"
    job_status_table_name: str = "JobStatus"
    start_queue_name: str = "start-jobs"
    task_queue_name: str = "image-jobs"
    images_container_name: str = "images"

    # Fuente de estaciones meteorológicas
    stations_url: str = "https://data.buienradar.nl/2.0/feed/json"
    stations_to_process: int = 0  # 0 = sin límite
    station_fetch_timeout_s: float = 10.0
    station_fetch_max_attempts: int = 3

    # Reintentos de la actualización optimista del estado del job
    status_update_max_attempts: int = 10
    status_update_base_delay_s: float = 0.05
    status_update_max_delay_s: float = 2.0
    fanout_update_max_attempts: int = 10

    # Consumo de colas
    queue_visibility_timeout_s: int = 300
    queue_max_dequeue_count: int = 5
    queue_batch_size: int = 16
    task_worker_concurrency: int = 8
    run_workers_in_process: bool = True
    worker_poll_interval_s: float = 1.0

    # Foto de fondo opcional; sin URL se pinta un lienzo liso
    background_image_url: str | None = None
    background_fetch_timeout_s: float = 5.0

    # Lectura de estado
    status_read_model: StatusReadModel = StatusReadModel.JOB_STORE
    expected_station_count: int = 50
    sas_expiry_minutes: int = 60
    stuck_job_after_minutes: int = 30
    list_jobs_default_top: int = 50

    # Le indicamos a Pydantic que lea automáticamente las variables de entorno
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    """Crea (y memoriza) la configuración de forma perezosa.

    Usamos `lru_cache` para que sólo se construya una instancia por proceso,
    evitando relecturas repetidas de `.env`. También normalizamos la lista de
    orígenes permitidos para CORS cuando llega como cadena separada por comas.
    """

    settings = Settings()
    # Accept comma separated `ALLOWED_ORIGINS` env value as a string
    ao = settings.allowed_origins
    if isinstance(ao, str):
        settings.allowed_origins = [s.strip() for s in ao.split(",") if s.strip()]
    return settings

import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, NoReturn

import uvicorn
from fastapi import FastAPI, HTTPException, status, Request, Response

from .. import __version__
from ..config import EngineSettings
from ..exceptions import (
    AlreadyExists,
    BuildError,
    DimensionMismatch,
    EmbeddingUnavailable,
    IndexClosed,
    MigrationPartialFailure,
    NotFound,
    UnknownMetric,
)
from ..implementations.query_processor import QueryProcessor
from ..implementations.vector import QueryResult, Record
from .models import (
    ExplainRequest,
    HealthCheckResponse,
    LogLevelRequest,
    MigrationResponse,
    ReclassifyRequest,
    ReclassifyResponse,
    RecordResponse,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
    StatsResponse,
    TextSearchRequest,
    TierInfo,
    VectorCreateRequest,
    VectorUpdateRequest,
)

_STATUS_BY_ERROR = (
    (DimensionMismatch, status.HTTP_400_BAD_REQUEST),
    (UnknownMetric, status.HTTP_400_BAD_REQUEST),
    (BuildError, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyExists, status.HTTP_409_CONFLICT),
    (MigrationPartialFailure, status.HTTP_409_CONFLICT),
    (IndexClosed, status.HTTP_409_CONFLICT),
    (EmbeddingUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _record_response(record: Record) -> RecordResponse:
    return RecordResponse(
        id=record.id,
        values=record.vector.tolist(),
        created_at=record.created_at,
        updated_at=record.updated_at,
        tier=record.tier,
        metadata=dict(record.metadata),
    )


def _search_response(result: QueryResult, started: float) -> SearchResponse:
    return SearchResponse(
        results=[SearchResultItem(id=r.id, distance=r.distance, tier=r.tier) for r in result.results],
        total_results=len(result),
        partial=result.partial,
        degraded=result.degraded,
        plan=result.plan,
        execution_time_ms=(time.time() - started) * 1000,
    )


class RestAPI:
    def __init__(
            self,
            query_processor: QueryProcessor,
            title: str = "TieredVectorDB API",
            enable_file_logging: bool = False,
            log_level: str = "INFO",
            log_file: str = "tiered_vector_db_api.log"
    ):
        """
        Инициализация REST API

        Args:
            query_processor: Фасад движка (вставка, поиск, ярусы)
            title: Заголовок API
            enable_file_logging: Включить файловое логирование
            log_level: Уровень логирования
            log_file: Путь к файлу лога
        """
        self.query_processor = query_processor
        self.title = title
        self.enable_file_logging = enable_file_logging
        self.log_file = log_file

        self._setup_logging(log_level)
        self.logger = logging.getLogger("tiered_vector_db_api")

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            self.logger.info("Запущен TieredVectorDB API...")
            yield
            self.query_processor.close()
            self.logger.info("Остановлен TieredVectorDB API...")

        self.app = FastAPI(
            title=self.title,
            version=__version__,
            lifespan=lifespan
        )

        self._setup_middleware()
        self._setup_routes()

    def _fail(self, action: str, exc: Exception) -> NoReturn:
        """Перевести ошибку движка в HTTP-ответ."""
        for error_type, code in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                self.logger.warning(f"{action}: {exc}")
                detail = {"error": str(exc), "error_type": type(exc).__name__}
                if hasattr(exc, "record_id"):
                    detail["record_id"] = exc.record_id
                    detail["kind"] = getattr(exc, "kind", "record")
                if isinstance(exc, MigrationPartialFailure):
                    detail["details"] = exc.report.to_dict()
                raise HTTPException(status_code=code, detail=detail) from exc
        self.logger.error(f"{action}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": f"{action} failed: {exc}", "error_type": type(exc).__name__},
        ) from exc

    def _setup_routes(self):
        """Настройка маршрутов API"""

        @self.app.post("/vectors", status_code=status.HTTP_201_CREATED, response_model=RecordResponse)
        def insert_vector(request: VectorCreateRequest):
            """Вставка одной записи"""
            self.logger.info(
                f"Запрос на вставку записи {request.id} - размер: {len(request.values)}, "
                f"метаданные: {list(request.metadata.keys())}"
            )
            try:
                record = self.query_processor.insert(
                    request.id, request.values, request.timestamp, request.metadata
                )
            except Exception as e:
                self._fail(f"Insert of record {request.id}", e)
            self.logger.info(f"Запись {record.id} вставлена в ярус {record.tier}")
            return _record_response(record)

        @self.app.get("/vectors/{record_id}", response_model=RecordResponse)
        def get_vector(record_id: int):
            """Получение записи из любого яруса"""
            try:
                record = self.query_processor.get(record_id)
            except Exception as e:
                self._fail(f"Get of record {record_id}", e)
            return _record_response(record)

        @self.app.put("/vectors/{record_id}", response_model=RecordResponse)
        def update_vector(record_id: int, request: VectorUpdateRequest):
            """Обновление вектора существующей записи"""
            self.logger.info(f"Запрос на обновление записи {record_id}")
            try:
                record = self.query_processor.update(
                    record_id, request.values, request.timestamp, request.metadata
                )
            except Exception as e:
                self._fail(f"Update of record {record_id}", e)
            return _record_response(record)

        @self.app.delete("/vectors/{record_id}")
        def delete_vector(record_id: int):
            """Удаление записи"""
            self.logger.info(f"Запрос на удаление записи {record_id}")
            try:
                self.query_processor.delete(record_id)
            except Exception as e:
                self._fail(f"Delete of record {record_id}", e)
            return {"status": "success", "deleted_id": record_id}

        @self.app.post("/search", response_model=SearchResponse)
        def search_similar(request: SearchRequest):
            """Поиск ближайших векторов по всем ярусам"""
            self.logger.info(
                f"Запрос поиска - k: {request.k}, метрика: {request.metric or 'default'}, "
                f"размер вектора запроса: {len(request.query)}"
            )
            started = time.time()
            try:
                result = self.query_processor.search(
                    request.query,
                    request.k,
                    metric=request.metric,
                    deadline_seconds=request.deadline_ms / 1000 if request.deadline_ms else None,
                    search_list_size=request.search_list_size,
                )
            except Exception as e:
                self._fail("Search", e)
            self.logger.info(f"Поиск завершен - найдено {len(result)} результатов (partial={result.partial})")
            return _search_response(result, started)

        @self.app.post("/search/text", response_model=SearchResponse)
        def search_text(request: TextSearchRequest):
            """Поиск по тексту через источник эмбеддингов"""
            self.logger.info(f"Запрос текстового поиска - k: {request.k}, длина текста: {len(request.text)}")
            started = time.time()
            try:
                result = self.query_processor.search_text(
                    request.text,
                    request.k,
                    metric=request.metric,
                    deadline_seconds=request.deadline_ms / 1000 if request.deadline_ms else None,
                )
            except Exception as e:
                self._fail("Text search", e)
            return _search_response(result, started)

        @self.app.post("/query/explain")
        def explain_query(request: ExplainRequest):
            """План выполнения запроса без выполнения"""
            try:
                return self.query_processor.explain(request.k, request.metric)
            except Exception as e:
                self._fail("Explain", e)

        @self.app.get("/tiers", response_model=List[TierInfo])
        def list_tiers():
            """Список ярусов с расположением и числом записей"""
            return self.query_processor.list_tiers()

        @self.app.post("/tiers/{tier_id}/migrate", response_model=MigrationResponse)
        def migrate_tier(tier_id: str):
            """Перенос яруса в архив"""
            self.logger.info(f"Запрос на перенос яруса {tier_id}")
            try:
                report = self.query_processor.migrate_tier(tier_id)
                report.raise_for_failures()
            except Exception as e:
                self._fail(f"Migration of tier {tier_id}", e)
            self.logger.info(f"Ярус {tier_id} перенесен: {report.moved_count} записей")
            return report.to_dict()

        @self.app.post("/tiers/reclassify", response_model=ReclassifyResponse)
        def reclassify(request: ReclassifyRequest):
            """Сдвиг границы горячего яруса"""
            self.logger.info(f"Запрос на сдвиг границы: {request.hot_from_year}")
            try:
                report = self.query_processor.reclassify_boundary(request.hot_from_year)
            except Exception as e:
                self._fail("Reclassify", e)
            return report.to_dict()

        @self.app.post("/index/repair")
        def repair_index():
            """Уплотнение графов: удаление надгробий"""
            try:
                repaired = self.query_processor.repair_indexes()
            except Exception as e:
                self._fail("Index repair", e)
            return {"status": "success", "removed": repaired}

        @self.app.get("/index/info")
        def index_info():
            return self.query_processor.get_index_info()

        @self.app.get("/stats", response_model=StatsResponse)
        def get_stats():
            """Статистика движка"""
            return self.query_processor.stats()

        @self.app.get("/health", response_model=HealthCheckResponse)
        def health_check():
            """Проверка здоровья сервиса"""
            return HealthCheckResponse(
                status="healthy",
                version=__version__,
                timestamp=datetime.now(timezone.utc).isoformat(),
                index_state=self.query_processor.stats()["index_state"],
            )

        @self.app.post("/log/level")
        def set_log_level(request: LogLevelRequest):
            """Изменение уровня логирования на лету"""
            logging.getLogger().setLevel(request.level.value)
            self.logger.info(f"Уровень логирования изменен на {request.level.value}")
            return {"status": "success", "level": request.level.value}

    def get_app(self) -> FastAPI:
        """Получение FastAPI приложения"""
        return self.app

    def _setup_logging(self, log_level: str):
        """Настройка единого формата логирования"""

        LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level.upper())

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        if self.enable_file_logging:
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    def _setup_middleware(self):
        """Настройка middleware для логирования запросов"""

        @self.app.middleware("http")
        async def log_requests(request: Request, call_next) -> Response:
            start_time = time.time()

            self.logger.info(f"→ Входящий запрос: {request.method} {request.url.path}")

            if request.method in ["POST", "PUT"] and self.logger.isEnabledFor(logging.DEBUG):
                body = await request.body()
                if len(body) < 1000:
                    self.logger.debug(f"Тело запроса: {body.decode(errors='replace')}")

            response = await call_next(request)

            process_time = (time.time() - start_time) * 1000
            self.logger.info(
                f"← Ответ: {request.method} {request.url.path} - "
                f"Статус: {response.status_code} - Время: {process_time:.2f}мс"
            )

            return response


def create_app() -> FastAPI:
    """Фабрика приложения для uvicorn --factory: настройки из TVDB_* переменных окружения"""
    return RestAPI(QueryProcessor.from_settings(EngineSettings.from_env())).get_app()


if __name__ == "__main__":
    api = RestAPI(
        query_processor=QueryProcessor.from_settings(EngineSettings.from_env()),
        enable_file_logging=True,
        log_level="INFO"
    )

    uvicorn.run(
        api.get_app(),
        host="127.0.0.1",
        port=8000,
        log_config=None
    )

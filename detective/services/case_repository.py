"""
Case/question repository with layered caching

Read path:
1. In-memory full case list (TTL)
2. In-memory per-case entries
3. One in-flight load shared by concurrent callers
4. Redis persisted tier
5. Database

Case content is never mutated at runtime, so invalidation is time based only.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from starlette.concurrency import run_in_threadpool

from detective.config import settings
from detective.models import Case, Question
from detective.schemas.case import AnswerRegionData, CaseData, CaseSummary, QuestionData
from detective.utils.cache import CacheService

logger = logging.getLogger(__name__)

CASES_CACHE_KEY = "detective:cases"
CASES_LIST_CACHE_KEY = "detective:cases:list"
TOTAL_QUESTIONS_CACHE_KEY = "detective:cases:total_questions"


@dataclass
class QuestionIdMap:
    """Bidirectional ordinal <-> storage id lookup for one case"""
    number_to_db: Dict[int, int] = field(default_factory=dict)
    db_to_number: Dict[int, int] = field(default_factory=dict)

    @classmethod
    def from_case(cls, case: CaseData) -> "QuestionIdMap":
        id_map = cls()
        for question in case.questions:
            id_map.number_to_db[question.id] = question.db_id
            id_map.db_to_number[question.db_id] = question.id
        return id_map

    def db_id(self, number: int) -> Optional[int]:
        return self.number_to_db.get(number)

    def number(self, db_id: int) -> Optional[int]:
        return self.db_to_number.get(db_id)


class CaseRepository:
    """
    Long-lived read-only access to the case -> question -> region graph

    Construct once per process and share by reference.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cache: Optional[CacheService] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.cache = cache or CacheService(None)
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.CASE_CACHE_TTL
        self._clock = clock

        self._cases: Optional[List[CaseData]] = None
        self._cases_time = 0.0
        self._case_entries: Dict[int, Tuple[CaseData, float]] = {}
        self._id_maps: Dict[int, QuestionIdMap] = {}
        self._summaries: Optional[List[CaseSummary]] = None
        self._summaries_time = 0.0
        self._loading: Optional["asyncio.Future[List[CaseData]]"] = None

    # Cache bookkeeping

    def _is_fresh(self, stamp: float) -> bool:
        return self._clock() - stamp < self.ttl_seconds

    def _get_cases_cache(self) -> Optional[List[CaseData]]:
        if self._cases is not None and self._is_fresh(self._cases_time):
            return self._cases
        return None

    def _set_cases_cache(self, cases: List[CaseData]) -> None:
        now = self._clock()
        self._cases = cases
        self._cases_time = now
        for case in cases:
            self._case_entries[case.id] = (case, now)
            self._id_maps[case.id] = QuestionIdMap.from_case(case)

    def clear(self, persisted: bool = False) -> None:
        """Drop every in-memory cache entry, and the Redis tier if `persisted`"""
        if persisted:
            for key in (CASES_CACHE_KEY, CASES_LIST_CACHE_KEY, TOTAL_QUESTIONS_CACHE_KEY):
                self.cache.delete(key)
        self._cases = None
        self._cases_time = 0.0
        self._case_entries.clear()
        self._id_maps.clear()
        self._summaries = None
        self._summaries_time = 0.0
        self._loading = None

    # Backing store

    @staticmethod
    def _to_case_data(case: Case) -> CaseData:
        return CaseData(
            id=case.id,
            title=case.title,
            image=case.image_url,
            questions=[
                QuestionData(
                    id=question.question_number,
                    db_id=question.id,
                    text=question.text,
                    explanation=question.explanation or "",
                    answer_regions=[
                        AnswerRegionData(
                            x=region.x,
                            y=region.y,
                            width=region.width,
                            height=region.height,
                            description=region.description or "",
                        )
                        for region in question.answer_regions
                    ],
                )
                for question in case.questions
            ],
        )

    def _fetch_cases(self) -> List[CaseData]:
        db = self.session_factory()
        try:
            cases = (
                db.query(Case)
                .options(selectinload(Case.questions).selectinload(Question.answer_regions))
                .filter(Case.status == "approved")
                .order_by(Case.id)
                .all()
            )
            return [self._to_case_data(case) for case in cases]
        finally:
            db.close()

    def _fetch_summaries(self) -> List[CaseSummary]:
        db = self.session_factory()
        try:
            rows = (
                db.query(Case.id, Case.title, Case.image_url)
                .filter(Case.status == "approved")
                .order_by(Case.id)
                .all()
            )
            return [CaseSummary(id=row.id, title=row.title, image_url=row.image_url) for row in rows]
        finally:
            db.close()

    async def _load_cases(self) -> List[CaseData]:
        try:
            cached = self.cache.get(CASES_CACHE_KEY)
            if cached is not None:
                cases = [CaseData(**item) for item in cached]
            else:
                cases = await run_in_threadpool(self._fetch_cases)
                self.cache.set(
                    CASES_CACHE_KEY,
                    [case.model_dump() for case in cases],
                    ttl=self.ttl_seconds,
                )
                logger.info(f"Loaded {len(cases)} cases from database")
            self._set_cases_cache(cases)
            return cases
        finally:
            self._loading = None

    # Public read API

    async def get_cases(self) -> List[CaseData]:
        """
        Full case list ordered by id

        Concurrent callers share one in-flight load. On backing-store
        failure an empty list is returned and nothing is cached.
        """
        cached = self._get_cases_cache()
        if cached is not None:
            return cached

        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load_cases())

        try:
            return await asyncio.shield(self._loading)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load cases: {str(e)}")
            return []

    async def get_cases_list_only(self) -> List[CaseSummary]:
        """Lightweight id/title/image listing without questions"""
        if self._summaries is not None and self._is_fresh(self._summaries_time):
            return self._summaries

        cached = self.cache.get(CASES_LIST_CACHE_KEY)
        if cached is not None:
            summaries = [CaseSummary(**item) for item in cached]
        else:
            try:
                summaries = await run_in_threadpool(self._fetch_summaries)
            except SQLAlchemyError as e:
                logger.error(f"Failed to load case list: {str(e)}")
                return []
            self.cache.set(
                CASES_LIST_CACHE_KEY,
                [summary.model_dump() for summary in summaries],
                ttl=self.ttl_seconds,
            )

        self._summaries = summaries
        self._summaries_time = self._clock()
        return summaries

    async def get_case_by_id(self, case_id: int) -> Optional[CaseData]:
        entry = self._case_entries.get(case_id)
        if entry is not None and self._is_fresh(entry[1]):
            return entry[0]

        for case in await self.get_cases():
            if case.id == case_id:
                return case
        return None

    async def get_question_by_case_and_question_id(
        self,
        case_id: int,
        question_id: int
    ) -> Optional[QuestionData]:
        """Pure lookup against the materialized graph, never a separate fetch"""
        case = await self.get_case_by_id(case_id)
        if case is None:
            return None
        for question in case.questions:
            if question.id == question_id:
                return question
        return None

    async def get_total_questions_count(self) -> int:
        cached = self.cache.get(TOTAL_QUESTIONS_CACHE_KEY)
        if cached is not None:
            return int(cached)

        total = sum(len(case.questions) for case in await self.get_cases())
        if total:
            self.cache.set(TOTAL_QUESTIONS_CACHE_KEY, total, ttl=self.ttl_seconds)
        return total

    async def get_question_id_map(self, case_id: int) -> Optional[QuestionIdMap]:
        case = await self.get_case_by_id(case_id)
        if case is None:
            return None
        id_map = self._id_maps.get(case_id)
        if id_map is None:
            id_map = QuestionIdMap.from_case(case)
            self._id_maps[case_id] = id_map
        return id_map

    async def get_question_db_id(self, case_id: int, question_number: int) -> Optional[int]:
        id_map = await self.get_question_id_map(case_id)
        return id_map.db_id(question_number) if id_map else None

    async def get_question_number(self, case_id: int, question_db_id: int) -> Optional[int]:
        id_map = await self.get_question_id_map(case_id)
        return id_map.number(question_db_id) if id_map else None

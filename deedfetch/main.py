import asyncio
import logging
from typing import Dict, List, Optional, Union

from langgraph.graph import START, StateGraph, END

from .config import Settings, get_settings
from .errors import FailureRecord
from .models import NormalizedDeed
from .state import InputState, DeedRetrievalState
from .scrapers.registry import Registry, default_registry
from .nodes import (
    ResolveNode,
    FetchNode,
    DocumentProcessorNode,
    ClassifyNode,
    FinalizeNode,
)

# Set up logging
logging.basicConfig(
    level=get_settings().log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

Outcome = Union[NormalizedDeed, FailureRecord]


class DeedRetrievalGraph:
    def __init__(self, registry: Optional[Registry] = None, settings: Optional[Settings] = None):
        """Initialize the deed retrieval graph.

        Args:
            registry: Jurisdiction registry; defaults to the one built from the configured table
            settings: Runtime settings; defaults to the environment
        """
        self.registry = registry or default_registry()
        self.settings = settings or get_settings()
        self._init_nodes()
        self._build_workflow()
        self.compiled_app = None

    def _init_nodes(self):
        """Initialize all workflow nodes"""
        self.resolver = ResolveNode(self.registry)
        self.fetcher = FetchNode(self.registry, self.settings)
        self.document_processor = DocumentProcessorNode()
        self.classifier = ClassifyNode(self.settings)
        self.finalizer = FinalizeNode()

    def _build_workflow(self):
        """Configure the state graph workflow"""
        self.workflow = StateGraph(DeedRetrievalState)

        self.workflow.add_node("resolve", self.resolver.run)
        self.workflow.add_node("fetch", self.fetcher.run)
        self.workflow.add_node("normalize", self.document_processor.run)
        self.workflow.add_node("classify", self.classifier.run)
        self.workflow.add_node("finalize", self.finalizer.run)

        self.workflow.add_edge(START, "resolve")

        # Any failing step hands over to the classifier
        self.workflow.add_conditional_edges(
            "resolve", self._has_failed, {True: "classify", False: "fetch"}
        )
        self.workflow.add_conditional_edges(
            "fetch", self._has_failed, {True: "classify", False: "normalize"}
        )
        self.workflow.add_conditional_edges(
            "normalize", self._has_failed, {True: "classify", False: "finalize"}
        )

        # Retry with a fresh session, or give up
        self.workflow.add_conditional_edges(
            "classify",
            lambda state: bool(state.get("retry")),
            {True: "fetch", False: "finalize"},
        )

        self.workflow.add_edge("finalize", END)

    def _has_failed(self, state: DeedRetrievalState) -> bool:
        return state.get("failure") is not None

    def compile(self):
        """Compile the workflow and cache the compiled app.

        Returns:
            The compiled workflow app
        """
        if self.compiled_app is None:
            logger.info("Compiling deed retrieval workflow")
            self.compiled_app = self.workflow.compile()
        return self.compiled_app

    def create_initial_state(self, request: InputState) -> DeedRetrievalState:
        if not request.get("address"):
            raise ValueError("Address must be set before creating initial state")

        return DeedRetrievalState(
            address=request["address"],
            county=request.get("county"),
            state=request.get("state"),
            jurisdiction=None,
            attempt=0,
            search_result=None,
            document=None,
            captcha_encountered=False,
            side_effect_committed=False,
            deed=None,
            failure=None,
            retry=False,
            current_step="starting workflow",
            errors=[],
        )

    async def run(self, address: str, county: Optional[str] = None, state: Optional[str] = None) -> DeedRetrievalState:
        """Run the workflow for one address.

        Args:
            address: Property street address
            county: Optional county hint
            state: Optional state hint

        Returns:
            The final state; exactly one of ``deed`` and ``failure`` is set
        """
        app = self.compile()
        initial = self.create_initial_state(InputState(address=address, county=county, state=state))

        logger.info(f"Starting deed retrieval workflow for {address}")
        result = await app.ainvoke(initial)
        logger.info("Deed retrieval workflow completed")
        return result

    async def resolve_and_fetch(self, address: str, hints: Optional[Dict[str, str]] = None) -> Outcome:
        """Retrieve the deed for an address as a NormalizedDeed or a terminal FailureRecord."""
        hints = hints or {}
        result = await self.run(address, county=hints.get("county"), state=hints.get("state"))
        return result.get("deed") or result["failure"]


_graph: Optional[DeedRetrievalGraph] = None


def get_graph() -> DeedRetrievalGraph:
    global _graph
    if _graph is None:
        _graph = DeedRetrievalGraph()
        _graph.compile()
    return _graph


async def resolve_and_fetch(address: str, hints: Optional[Dict[str, str]] = None) -> Outcome:
    return await get_graph().resolve_and_fetch(address, hints)


class DeedFetchPool:
    """
    Bounded concurrency for many requests.

    Each request still owns its own browser session; the pool only caps how
    many sessions are alive at once.
    """

    def __init__(self, size: Optional[int] = None, graph: Optional[DeedRetrievalGraph] = None):
        self.graph = graph or get_graph()
        self.size = size or self.graph.settings.pool_size
        self._semaphore = asyncio.Semaphore(self.size)

    async def fetch(self, address: str, hints: Optional[Dict[str, str]] = None) -> Outcome:
        async with self._semaphore:
            return await self.graph.resolve_and_fetch(address, hints)

    async def fetch_many(self, addresses: List[str], hints: Optional[Dict[str, str]] = None) -> List[Outcome]:
        """Fetch every address concurrently; results keep the input order."""
        logger.info(f"Fetching {len(addresses)} deed(s) with up to {self.size} browser(s)")
        return list(await asyncio.gather(*(self.fetch(address, hints) for address in addresses)))

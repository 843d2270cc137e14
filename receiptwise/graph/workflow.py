"""
LangGraph wiring for the receipt extraction flow.

validate_input -> extract -> reconcile, run once per request. A node that
fails sets error/error_kind and the graph routes straight to END. The graph is
compiled without a checkpointer: extraction results are transient until the
user confirms them and they are saved through receiptwise.persistence.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from langgraph.graph import END, START, StateGraph

from receiptwise.graph.nodes.extraction import (
	ExtractionError,
	ImageTooLargeError,
	InputInvalidError,
	extract_node,
	validate_input_node,
)
from receiptwise.graph.nodes.reconcile import reconcile_node
from receiptwise.graph.state import (
	IMAGE_TOO_LARGE,
	INPUT_INVALID,
	ExtractedReceiptData,
	ExtractionOverrides,
	ExtractionState,
)

logger = logging.getLogger(__name__)

_APP_GRAPH = None


def _continue_unless_failed(next_node: str):
	def _route(state: ExtractionState) -> str:
		return END if state.error else next_node
	return _route


def build_graph() -> Any:
	"""Build and compile the extraction graph."""
	graph = StateGraph(ExtractionState)
	graph.add_node("validate_input", validate_input_node)
	graph.add_node("extract", extract_node)
	graph.add_node("reconcile", reconcile_node)

	graph.add_edge(START, "validate_input")
	graph.add_conditional_edges(
		"validate_input", _continue_unless_failed("extract"), ["extract", END]
	)
	graph.add_conditional_edges(
		"extract", _continue_unless_failed("reconcile"), ["reconcile", END]
	)
	graph.add_edge("reconcile", END)
	return graph.compile()


def get_graph() -> Any:
	global _APP_GRAPH
	if _APP_GRAPH is None:
		_APP_GRAPH = build_graph()
	return _APP_GRAPH


def run_extraction(
	photo_data_uri: str,
	overrides: Optional[ExtractionOverrides] = None,
) -> ExtractedReceiptData:
	"""Run the extraction flow for one receipt image.

	Returns the model output merged with the overrides, ready for the user
	to confirm. Raises InputInvalidError before the model is contacted when
	the image is unusable, and ExtractionError when the model call fails or
	its output does not match the schema. Nothing is retried.
	"""
	initial = ExtractionState(photo_data_uri=photo_data_uri or "", overrides=overrides)
	values = get_graph().invoke(initial)

	for event in values.get("audit_log", []):
		logger.debug("[%s] %s", event.node, event.message)

	error = values.get("error")
	if error:
		kind = values.get("error_kind")
		if kind == IMAGE_TOO_LARGE:
			raise ImageTooLargeError(error)
		if kind == INPUT_INVALID:
			raise InputInvalidError(error)
		raise ExtractionError(error)

	result = values.get("result")
	if result is None:
		raise ExtractionError("AI failed to extract data from the receipt image.")
	return result

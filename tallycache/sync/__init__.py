"""Chunked download and sync orchestration for tallycache.

Import the submodules directly (``tallycache.sync.orchestrator``,
``tallycache.sync.windows``); the cache layer depends on ``windows`` so this
package does not import the orchestrator eagerly.
"""

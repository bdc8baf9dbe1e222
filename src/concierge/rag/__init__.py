"""Query pipeline: data-source routing, then retrieval-augmented chat completion."""

# Lazy imports to avoid pulling in the openai client at module scan time.
# Use: from concierge.rag.pipeline import AnswerPipeline
# or: from concierge.rag.router import DataSourceRouter

__all__ = ["AnswerPipeline", "DataSourceRouter", "load_catalogue"]


def __getattr__(name: str):
    if name == "AnswerPipeline":
        from concierge.rag.pipeline import AnswerPipeline
        return AnswerPipeline
    if name == "DataSourceRouter":
        from concierge.rag.router import DataSourceRouter
        return DataSourceRouter
    if name == "load_catalogue":
        from concierge.rag.sources import load_catalogue
        return load_catalogue
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

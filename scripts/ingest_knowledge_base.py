"""Script to ingest general-knowledge documents into the vector store."""
import asyncio
import json
import sys
from pathlib import Path

from support_workflow.agent.llm import LLMClient
from support_workflow.config import get_settings
from support_workflow.knowledge_builder import KnowledgeBuilder
from support_workflow.logging_config import configure_logging
from support_workflow.vector_store import ChromaVectorStore, create_vector_store

DEFAULT_BASE_PATH = Path(__file__).parent.parent / "data" / "knowledge_base"


async def ingest_markdown_documents(builder: KnowledgeBuilder, base_path: Path) -> int:
    """Ingest every markdown file under docs/, one source per file."""
    total = 0
    for filepath in sorted((base_path / "docs").glob("*.md")):
        print(f"Ingesting {filepath.name}...")
        text = filepath.read_text(encoding="utf-8")
        title = next((line.lstrip("# ").strip() for line in text.splitlines() if line.startswith("#")), filepath.stem)
        chunks = await builder.build_general_knowledge(
            source_id=f"doc:{filepath.stem}",
            title=title,
            text=text,
            metadata={"file": filepath.name, "doc_type": "document"},
        )
        total += len(chunks)
        print(f"  Added {len(chunks)} chunks from {filepath.name}")
    return total


async def ingest_json_faqs(builder: KnowledgeBuilder, base_path: Path) -> int:
    """
    Ingest FAQ files under faqs/.

    Each file holds ``{"module": ..., "faqs": [{"id", "question", "answer", "keywords"}]}``;
    every FAQ becomes its own source.
    """
    total = 0
    for filepath in sorted((base_path / "faqs").glob("*.json")):
        print(f"Ingesting {filepath.name}...")
        data = json.loads(filepath.read_text(encoding="utf-8"))
        module = data.get("module")

        faqs = data.get("faqs", [])
        for faq in faqs:
            metadata = {
                "file": filepath.name,
                "doc_type": "faq",
                "keywords": faq.get("keywords", []),
            }
            if module:
                metadata["module"] = module
            chunks = await builder.build_general_knowledge(
                source_id=f"faq:{faq['id']}",
                title=faq["question"],
                text=f"Q: {faq['question']}\n\nA: {faq['answer']}",
                metadata=metadata,
            )
            total += len(chunks)

        print(f"  Added {len(faqs)} FAQs from {filepath.name}")
    return total


async def run(base_path: Path) -> None:
    settings = get_settings()
    store = create_vector_store(settings)

    if isinstance(store, ChromaVectorStore):
        existing_count = store.collection.count()
        if existing_count > 0:
            response = input(
                f"\nVector store already contains {existing_count} chunks. Reset and re-ingest? (y/n): "
            )
            if response.lower() == "y":
                print("Resetting vector store...")
                store.reset()
            else:
                print("Aborting ingestion.")
                return

    builder = KnowledgeBuilder(store, LLMClient(settings), settings)

    print("\n1. Ingesting documents...")
    doc_chunks = await ingest_markdown_documents(builder, base_path)

    print("\n2. Ingesting FAQs...")
    faq_chunks = await ingest_json_faqs(builder, base_path)

    print("\n" + "=" * 50)
    print(f"Ingestion complete! Chunks written: {doc_chunks + faq_chunks}")
    print("=" * 50)


def main():
    """Main ingestion function."""
    configure_logging()
    print("=" * 50)
    print("Knowledge Base Ingestion")
    print("=" * 50)

    base_path = Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_BASE_PATH
    asyncio.run(run(base_path))


if __name__ == "__main__":
    main()

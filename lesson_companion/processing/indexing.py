from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Protocol

from whoosh import index
from whoosh.fields import ID, NUMERIC, TEXT, Schema
from whoosh.qparser import QueryParser

from .formatter import split_sentences


class LessonIndexer(Protocol):
    def index_lesson(self, lesson_id: str, child_id: str, title: Optional[str], text: str) -> None:
        ...


class NoopIndexer:
    """
    Default indexer stub. Keeps the pipeline wired without pulling in Whoosh.
    """

    def index_lesson(self, lesson_id: str, child_id: str, title: Optional[str], text: str) -> None:
        return None


class WhooshIndexer:
    """
    File-system backed Whoosh index over lesson `extracted_text`, split into
    passages so chat/search can cite a small chunk. Re-indexing a lesson
    first deletes its existing passages.
    """

    def __init__(self, index_dir: Path, passage_sentences: int = 5):
        self.index_dir = Path(index_dir)
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.passage_sentences = passage_sentences
        self.schema = Schema(
            lesson_id=ID(stored=True),
            child_id=ID(stored=True),
            passage_id=ID(stored=True, unique=True),
            order=NUMERIC(stored=True, sortable=True),
            title=TEXT(stored=True),
            text=TEXT(stored=True),
        )
        if index.exists_in(self.index_dir):
            self.ix = index.open_dir(self.index_dir)
        else:
            self.ix = index.create_in(self.index_dir, self.schema)

    def index_lesson(self, lesson_id: str, child_id: str, title: Optional[str], text: str) -> None:
        writer = self.ix.writer()
        writer.delete_by_term("lesson_id", lesson_id)
        for order, passage in enumerate(self._passages(text)):
            writer.add_document(
                lesson_id=lesson_id,
                child_id=child_id,
                passage_id=f"{lesson_id}-{order}",
                order=order,
                title=title or "",
                text=passage,
            )
        writer.commit()

    def delete_lesson(self, lesson_id: str) -> None:
        writer = self.ix.writer()
        writer.delete_by_term("lesson_id", lesson_id)
        writer.commit()

    def search(self, query_str: str, child_id: Optional[str] = None, limit: int = 10) -> List[Dict]:
        """
        Return a list of plain dicts so callers are safe after the searcher closes.
        """
        qp = QueryParser("text", schema=self.schema)
        q = qp.parse(query_str)
        with self.ix.searcher() as searcher:
            results = searcher.search(q, limit=None if child_id else limit)
            hits = []
            for hit in results:
                fields = hit.fields()
                if child_id and fields.get("child_id") != child_id:
                    continue
                hits.append(
                    {
                        "lesson_id": fields.get("lesson_id"),
                        "passage_id": fields.get("passage_id"),
                        "order": fields.get("order"),
                        "text": fields.get("text"),
                    }
                )
                if len(hits) >= limit:
                    break
            return hits

    def _passages(self, text: str) -> List[str]:
        passages: List[str] = []
        for paragraph in (text or "").split("\n\n"):
            sentences = split_sentences(" ".join(paragraph.split()))
            for i in range(0, len(sentences), self.passage_sentences):
                passages.append(" ".join(sentences[i : i + self.passage_sentences]))
        return [p for p in passages if p.strip()]

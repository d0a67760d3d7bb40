"""Embed catalog articles and upload them to the Pinecone product index.

Input is a text export with one article per block, blocks separated by a line
of "===" and each line in "Key: value" form, e.g.

    Codigo referencia: 000123
    Denominacion web: Ciprés Común
    Stock web: 12
    ===

Usage: python scripts/upload_catalog_index.py articulos.txt
"""

import argparse
import os
import re
import sys
import time
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv


BATCH_SIZE = 50
TEXT_FIELDS = [
    "denominacion_familia",
    "denominacion_grupo",
    "denominacion_web",
    "descripcion_bandeja",
    "descripcion_de_cada_articulo",
]

_BLOCK_SPLIT = re.compile(r"={3,}")
_FLOAT_RE = re.compile(r"^-?\d+\.\d+$")
_INT_RE = re.compile(r"^-?\d+$")


def parse_article(block: str) -> Dict[str, Any]:
    art: Dict[str, Any] = {}
    for line in block.strip().splitlines():
        if ":" not in line:
            continue
        key, val = line.split(":", 1)
        key = re.sub(r"\s+", "_", key.strip().lower())
        val = val.strip()
        if not key:
            continue
        # References keep leading zeros
        if key == "codigo_referencia":
            art[key] = val
        elif _FLOAT_RE.match(val):
            art[key] = float(val)
        elif _INT_RE.match(val) and len(val) < 10:
            art[key] = int(val)
        else:
            art[key] = val
    return art


def parse_articles(content: str) -> List[Dict[str, Any]]:
    articles = [parse_article(b) for b in _BLOCK_SPLIT.split(content)]
    return [a for a in articles if a.get("codigo_referencia")]


def article_text(art: Dict[str, Any]) -> str:
    parts = [str(art[k]) for k in TEXT_FIELDS if art.get(k) not in (None, "", "N/A")]
    if not parts:
        parts.append(f"Producto {art.get('codigo_referencia')}")
    return " - ".join(parts)


def embed_batch(client, texts: List[str], model: str, dimensions: int) -> List[List[float]]:
    resp = client.embeddings.create(model=model, input=texts, dimensions=dimensions)
    return [d.embedding for d in resp.data]


def upload(articles: List[Dict[str, Any]], index, client, model: str, dimensions: int,
           namespace: str = None, pause: float = 0.1) -> Dict[str, int]:
    ok, failed = 0, 0
    for i in range(0, len(articles), BATCH_SIZE):
        batch = articles[i:i + BATCH_SIZE]
        try:
            vectors = embed_batch(client, [article_text(a) for a in batch], model, dimensions)
            index.upsert(
                vectors=[
                    {"id": str(a["codigo_referencia"]), "values": v, "metadata": a}
                    for a, v in zip(batch, vectors)
                ],
                namespace=namespace,
            )
            ok += len(batch)
        except Exception as e:
            failed += len(batch)
            print(f"Batch starting at {i} failed: {e}")
        print(f"Uploaded {ok}/{len(articles)}", end="\r")
        if pause:
            time.sleep(pause)
    print()
    return {"ok": ok, "failed": failed}


def main(argv: List[str] = None) -> int:
    parser = argparse.ArgumentParser(description="Upload catalog articles to Pinecone")
    parser.add_argument("path", help="article export (blocks separated by ===)")
    parser.add_argument("--index", default=None, help="Pinecone index name (default: PINECONE_INDEX)")
    parser.add_argument("--dry-run", action="store_true", help="parse and print a sample without uploading")
    args = parser.parse_args(argv)

    load_dotenv()
    content = Path(args.path).read_text(encoding="utf-8")
    articles = parse_articles(content)
    print(f"Articles parsed: {len(articles)}")
    if not articles:
        return 1
    print(f"Sample: {articles[0]['codigo_referencia']} - {article_text(articles[0])[:60]}")
    if args.dry_run:
        return 0

    api_key = os.getenv("OPENAI_API_KEY")
    pinecone_key = os.getenv("PINECONE_API_KEY")
    if not api_key or not pinecone_key:
        print("ERROR: OPENAI_API_KEY and PINECONE_API_KEY must be set.")
        return 1

    from openai import OpenAI
    from pinecone import Pinecone

    client = OpenAI(api_key=api_key)
    index = Pinecone(api_key=pinecone_key).Index(args.index or os.getenv("PINECONE_INDEX", "products"))
    result = upload(
        articles,
        index,
        client,
        model=os.getenv("OPENAI_EMBED_MODEL", "text-embedding-3-small"),
        dimensions=int(os.getenv("EMBED_DIMENSIONS", "512")),
        namespace=os.getenv("PINECONE_NAMESPACE") or None,
    )
    print(f"Done: {result['ok']} uploaded, {result['failed']} failed")
    return 0 if result["failed"] == 0 else 2


if __name__ == "__main__":
    sys.exit(main())

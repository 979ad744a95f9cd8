# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations
import argparse, asyncio, json, sys
import yaml
from relay.auth import new_key_record
from relay.catalog import Catalog
from relay.config import get_cfg
from relay.consumer import RelayClientError, StreamConsumer
from relay.errors import RelayError
from relay.schemas import ChatbotConfig, ChatbotProfile, PromptTemplate
from relay.stores.base import BaseKVStore
from relay.stores.factory import get_kv

# set lazily; tests assign a fake store here
kv: BaseKVStore | None = None


def _kv() -> BaseKVStore:
    global kv
    if kv is None:
        kv = get_kv(get_cfg())
    if kv is None:
        raise SystemExit("kv.url/kv.token are not configured")
    return kv


def _print(obj) -> None:
    print(json.dumps(obj, ensure_ascii=False))


def make_consumer(args) -> StreamConsumer:
    cfg = get_cfg()
    url = args.url or f"http://{cfg.get('server.host', '127.0.0.1')}:{cfg.get('server.port', 8086)}"
    return StreamConsumer(url, args.api_key, timeout_s=args.timeout)


# ---------------- relay ----------------

async def _ask(args) -> int:
    consumer = make_consumer(args)
    options = {
        "prompt_id": args.prompt_id,
        "search_index": args.index,
        "max_results": args.max_results,
        "model": args.model,
        "temperature": args.temperature,
    }
    status = 0
    sources = []
    try:
        async for event in consumer.stream(args.query, **options):
            match event.type:
                case "start":
                    sources = event.sources
                case "content":
                    sys.stdout.write(event.text)
                    sys.stdout.flush()
                case "done":
                    sys.stdout.write("\n")
                    for n, s in enumerate(sources, start=1):
                        print(f"[{n}] {s.title} {s.url}".rstrip())
                    if args.verbose:
                        _print(event.usage.wire())
                case "error":
                    print(f"error [{event.code}]: {event.message}", file=sys.stderr)
                    status = 1
    except RelayClientError as e:
        print(f"error [{e.code or e.status}]: {e.message}", file=sys.stderr)
        status = 1
    finally:
        await consumer.aclose()
    return status


def cmd_ask(args):
    return asyncio.run(_ask(args))


# ---------------- raw kv ----------------

def cmd_kv_get(args):
    _print(asyncio.run(_kv().get(args.key)))


def cmd_kv_set(args):
    value = json.loads(args.value) if args.json else args.value
    asyncio.run(_kv().set(args.key, value))
    _print({"ok": True, "key": args.key})


# ---------------- catalog ----------------

def cmd_prompt_add(args):
    prompt = PromptTemplate(id=args.id, name=args.name, content=args.content,
                            description=args.description, is_default=args.default)
    out = asyncio.run(Catalog(_kv()).add_prompt(prompt))
    _print(out.wire())


def cmd_prompt_delete(args):
    moved = asyncio.run(Catalog(_kv()).delete_prompt(args.id))
    _print({"ok": True, "deleted": args.id, "active": moved})


def cmd_prompt_select(args):
    asyncio.run(Catalog(_kv()).select_prompt(args.id))
    _print({"ok": True, "active": args.id})


def cmd_chatbot_add(args):
    profile = ChatbotProfile(
        id=args.id,
        name=args.name,
        description=args.description or "",
        system_prompt_id=args.prompt_id,
        rate_limit_per_hour=args.rate_limit,
        config=ChatbotConfig(search_index=args.index, model_name=args.model,
                             temperature=args.temperature,
                             max_results=args.max_results),
    )
    out = asyncio.run(Catalog(_kv()).add_profile(profile))
    _print(out.wire())


def cmd_chatbot_delete(args):
    moved = asyncio.run(Catalog(_kv()).delete_profile(args.id))
    _print({"ok": True, "deleted": args.id, "active": moved})


def cmd_chatbot_select(args):
    asyncio.run(Catalog(_kv()).select_profile(args.id))
    _print({"ok": True, "active": args.id})


# ---------------- keys ----------------

def cmd_keygen(args):
    salt = str(get_cfg().get("auth.salt") or "")
    raw, record = new_key_record(args.id, args.rate_limit, salt)
    entry = {"auth": {"api_keys": {record.id: {
        "hash": record.key_hash,
        "name_prefix": record.name_prefix,
        "rate_limit_per_hour": record.rate_limit_per_hour,
        "status": record.status,
    }}}}
    print(f"# api key (shown once): {raw}")
    print(yaml.safe_dump(entry, sort_keys=False), end="")


def main_cli(argv=None):
    p = argparse.ArgumentParser(prog="relaycli")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_ask = sub.add_parser("ask", help="stream an answer from a running relay")
    p_ask.add_argument("query")
    p_ask.add_argument("--url", help="relay base URL (default: server.host/server.port)")
    p_ask.add_argument("--api-key")
    p_ask.add_argument("--prompt-id")
    p_ask.add_argument("--index")
    p_ask.add_argument("--model")
    p_ask.add_argument("--max-results", type=int)
    p_ask.add_argument("--temperature", type=float)
    p_ask.add_argument("--timeout", type=float, default=90.0)
    p_ask.add_argument("-v", "--verbose", action="store_true", help="print usage after the answer")
    p_ask.set_defaults(func=cmd_ask)

    p_get = sub.add_parser("kv-get")
    p_get.add_argument("key")
    p_get.set_defaults(func=cmd_kv_get)

    p_set = sub.add_parser("kv-set")
    p_set.add_argument("key")
    p_set.add_argument("value")
    p_set.add_argument("--json", action="store_true", help="parse value as JSON before storing")
    p_set.set_defaults(func=cmd_kv_set)

    p_padd = sub.add_parser("prompt-add")
    p_padd.add_argument("id")
    p_padd.add_argument("name")
    p_padd.add_argument("content")
    p_padd.add_argument("--description")
    p_padd.add_argument("--default", action="store_true")
    p_padd.set_defaults(func=cmd_prompt_add)

    p_pdel = sub.add_parser("prompt-delete")
    p_pdel.add_argument("id")
    p_pdel.set_defaults(func=cmd_prompt_delete)

    p_psel = sub.add_parser("prompt-select")
    p_psel.add_argument("id")
    p_psel.set_defaults(func=cmd_prompt_select)

    p_cadd = sub.add_parser("chatbot-add")
    p_cadd.add_argument("id")
    p_cadd.add_argument("name")
    p_cadd.add_argument("--description")
    p_cadd.add_argument("--prompt-id", help="system prompt template id")
    p_cadd.add_argument("--index")
    p_cadd.add_argument("--model")
    p_cadd.add_argument("--temperature", type=float)
    p_cadd.add_argument("--max-results", type=int)
    p_cadd.add_argument("--rate-limit", type=int)
    p_cadd.set_defaults(func=cmd_chatbot_add)

    p_cdel = sub.add_parser("chatbot-delete")
    p_cdel.add_argument("id")
    p_cdel.set_defaults(func=cmd_chatbot_delete)

    p_csel = sub.add_parser("chatbot-select")
    p_csel.add_argument("id")
    p_csel.set_defaults(func=cmd_chatbot_select)

    p_key = sub.add_parser("keygen", help="issue an API key and print its config entry")
    p_key.add_argument("id")
    p_key.add_argument("--rate-limit", type=int, default=100)
    p_key.set_defaults(func=cmd_keygen)

    args = p.parse_args(argv)
    try:
        return args.func(args)
    except RelayError as e:
        raise SystemExit(f"error [{e.code}]: {e.message}")

if __name__ == "__main__":
    raise SystemExit(main_cli())

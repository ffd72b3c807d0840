"""JSON Schema to Gemini ``Schema`` conversion.

Gemini accepts an OpenAPI 3.0 subset: uppercase type names, ``nullable``
instead of ``null`` in unions, no ``$ref``/``allOf`` and no exclusive
bounds.  ``to_gemini_schema`` rewrites a tool's parameter schema into that
dialect.
"""

from __future__ import annotations

from typing import Any

# Keys dropped outright.  Any other ``$``-prefixed key is dropped as well.
DROPPED_KEYS = frozenset(
    {"additionalProperties", "definitions", "$defs", "title", "examples", "default", "allOf"}
)


def _resolve_ref(ref: str, root: dict[str, Any]) -> dict[str, Any] | None:
    if ref == "#":
        return root
    if not ref.startswith("#/"):
        return None
    cur: Any = root
    for token in ref[2:].split("/"):
        token = token.replace("~1", "/").replace("~0", "~")
        if not isinstance(cur, dict) or token not in cur:
            return None
        cur = cur[token]
    return cur if isinstance(cur, dict) else None


def _merge_all_of(schema: dict[str, Any]) -> dict[str, Any]:
    merged = {k: v for k, v in schema.items() if k != "allOf"}
    for sub in schema["allOf"]:
        if not isinstance(sub, dict):
            continue
        for k, v in sub.items():
            if k == "properties" and isinstance(v, dict):
                base = merged.get("properties") if isinstance(merged.get("properties"), dict) else {}
                merged["properties"] = {**base, **v}
            elif k == "required" and isinstance(v, list):
                base_req = merged.get("required") if isinstance(merged.get("required"), list) else []
                merged["required"] = list(dict.fromkeys([*base_req, *v]))
            elif k not in merged:
                merged[k] = v
    return merged


def to_gemini_schema(
    schema: Any,
    root: dict[str, Any] | None = None,
    ref_stack: set[str] | None = None,
) -> dict[str, Any]:
    """Convert *schema* (a JSON Schema dict) to a Gemini schema dict.

    ``$ref`` pointers resolve against *root*; a ref already on *ref_stack*
    is a cycle and becomes ``{}``.
    """
    if not isinstance(schema, dict):
        return {}
    if root is None:
        root = schema
    if ref_stack is None:
        ref_stack = set()

    ref = schema.get("$ref")
    if isinstance(ref, str) and ref.strip():
        ref = ref.strip()
        if ref in ref_stack:
            return {}
        ref_stack.add(ref)
        resolved = _resolve_ref(ref, root) or {}
        merged = {**resolved, **schema}
        del merged["$ref"]
        try:
            return to_gemini_schema(merged, root, ref_stack)
        finally:
            ref_stack.discard(ref)

    if isinstance(schema.get("allOf"), list) and schema["allOf"]:
        return to_gemini_schema(_merge_all_of(schema), root, ref_stack)

    out: dict[str, Any] = {}

    union = schema.get("anyOf") if isinstance(schema.get("anyOf"), list) else schema.get("oneOf")
    if isinstance(union, list) and len(union) == 2:
        first, second = union
        for this, other in ((first, second), (second, first)):
            if isinstance(this, dict) and this.get("type") == "null":
                return {"nullable": True, **to_gemini_schema(other, root, ref_stack)}

    types = schema.get("type")
    if isinstance(types, list):
        names = [t for t in types if isinstance(t, str)]
        if names:
            non_null = [t for t in names if t != "null"]
            rest = {k: v for k, v in schema.items() if k not in ("type", "anyOf", "oneOf")}
            if len(non_null) == 1:
                out = to_gemini_schema({**rest, "type": non_null[0]}, root, ref_stack)
            else:
                out["anyOf"] = [
                    to_gemini_schema({**rest, "type": t}, root, ref_stack) for t in non_null
                ]
            if "null" in names:
                out["nullable"] = True
            return out

    for k, v in schema.items():
        if v is None or k.startswith("$") or k in DROPPED_KEYS:
            continue
        if k == "exclusiveMinimum":
            if isinstance(v, (int, float)) and not isinstance(v, bool):
                out.setdefault("minimum", v)
        elif k == "exclusiveMaximum":
            if isinstance(v, (int, float)) and not isinstance(v, bool):
                out.setdefault("maximum", v)
        elif k == "type":
            if isinstance(v, str) and v != "null":
                out["type"] = v.upper()
        elif k == "const":
            out.setdefault("enum", [v])
        elif k == "items":
            if isinstance(v, dict):
                out["items"] = to_gemini_schema(v, root, ref_stack)
        elif k == "properties":
            if isinstance(v, dict):
                out["properties"] = {
                    pk: to_gemini_schema(pv, root, ref_stack)
                    for pk, pv in v.items()
                    if isinstance(pv, dict)
                }
        elif k in ("anyOf", "oneOf"):
            if isinstance(v, list):
                out["anyOf"] = [to_gemini_schema(it, root, ref_stack) for it in v if isinstance(it, dict)]
        else:
            out[k] = v

    if "type" not in out and isinstance(out.get("properties"), dict):
        out["type"] = "OBJECT"
    return out

#!/usr/bin/env python3
"""eventbridge dispatch generator.

Input:  Python schema source containing @event_bridge / @event_handler class blocks.
Output: transformed Python source with generated unions replacing tagged blocks.
"""

from __future__ import annotations

import argparse
import ast
import dataclasses
import hashlib
import keyword
import pathlib
import re
import sys
from typing import Dict, List, Sequence, Tuple

GENERATOR_VERSION = "0.1.0"
FORMAT_VERSION = "1"
DIGEST_PATTERN = re.compile(r"^# digest: ([0-9a-f]{64})$", re.MULTILINE)
DATACLASSES_IMPORT = "import dataclasses"
RUNTIME_IMPORT = "from eventbridge.runtime import Err, Ok, Outcome"


class ParseError(RuntimeError):
    def __init__(self, message: str, line: int, col: int = 1) -> None:
        super().__init__(message)
        self.line = line
        self.col = col

    @classmethod
    def at(cls, node: ast.AST, message: str) -> "ParseError":
        return cls(message, getattr(node, "lineno", 1), getattr(node, "col_offset", 0) + 1)


@dataclasses.dataclass(frozen=True)
class Mode:
    marker: str
    trait_attr: str
    type_attr: str
    type_label: str
    bridges_errors: bool
    routine: str
    handler_param: str


ERROR_BRIDGING = Mode(
    marker="event_bridge",
    trait_attr="forward_to_trait",
    type_attr="trait_returned_error",
    type_label="Error type",
    bridges_errors=True,
    routine="forward_to",
    handler_param="api",
)
TYPED_RETURN = Mode(
    marker="event_handler",
    trait_attr="event_handler_trait",
    type_attr="event_handler_return",
    type_label="Return type",
    bridges_errors=False,
    routine="event_handler",
    handler_param="handler",
)
MODES: Dict[str, Mode] = {mode.marker: mode for mode in (ERROR_BRIDGING, TYPED_RETURN)}
CONFIG_ATTRS = {attr for mode in MODES.values() for attr in (mode.trait_attr, mode.type_attr)}


@dataclasses.dataclass
class Variant:
    name: str
    shape: str  # unit | positional | named
    field_names: List[str] = dataclasses.field(default_factory=list)
    field_types: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class GeneratorConfig:
    mode: Mode
    target_interface: str
    error_type: str | None = None
    return_type: str | None = None

    def outcome_type(self) -> str:
        if self.mode.bridges_errors:
            return f"Outcome[None, {self.error_type}]"
        return self.return_type or "None"


@dataclasses.dataclass
class UnionBlock:
    name: str
    start: int
    end: int
    config: GeneratorConfig
    variants: List[Variant] = dataclasses.field(default_factory=list)
    docstring: str | None = None


def fail(path: pathlib.Path, error: ParseError) -> None:
    print(f"{path}:{error.line}:{error.col}: error: {error}", file=sys.stderr)


def to_snake_case(name: str) -> str:
    """Convert CamelCase to snake_case.

    Every uppercase character after the first gets its own separator, so
    acronyms are split letter by letter: ``HTTPServer`` -> ``h_t_t_p_server``.
    """
    out: List[str] = []
    for i, ch in enumerate(name):
        if ch.isupper() and i != 0:
            out.append("_")
        out.append(ch.lower() if ch.isascii() else ch)
    return "".join(out)


def decorator_name(dec: ast.expr) -> str | None:
    if isinstance(dec, ast.Call):
        dec = dec.func
    if isinstance(dec, ast.Name):
        return dec.id
    return None


def find_marker(node: ast.stmt) -> Mode | None:
    decorators = getattr(node, "decorator_list", [])
    names = [decorator_name(dec) for dec in decorators]
    markers = [name for name in names if name in MODES]

    if not markers:
        if isinstance(node, ast.ClassDef) and any(name in CONFIG_ATTRS for name in names):
            raise ParseError.at(
                node, f"class '{node.name}' has dispatch configuration but no @event_bridge or @event_handler"
            )
        return None

    if not isinstance(node, ast.ClassDef):
        raise ParseError.at(node, f"@{markers[0]} applies only to tagged-union class declarations")
    if len(markers) > 1:
        raise ParseError.at(node, "@event_bridge and @event_handler cannot be combined on one declaration")

    for dec in decorators:
        if decorator_name(dec) == markers[0] and isinstance(dec, ast.Call) and (dec.args or dec.keywords):
            raise ParseError.at(dec, f"@{markers[0]} takes no arguments")
    return MODES[markers[0]]


def get_decorator_ident(node: ast.ClassDef, attr: str, label: str) -> str | None:
    found: str | None = None
    for dec in node.decorator_list:
        if decorator_name(dec) != attr:
            continue
        if found is not None:
            raise ParseError.at(dec, f"duplicate @{attr}(...) decorator")
        if not isinstance(dec, ast.Call) or len(dec.args) != 1 or dec.keywords:
            raise ParseError.at(dec, f"expected @{attr}(Name) with exactly one argument")
        arg = dec.args[0]
        if not isinstance(arg, ast.Name):
            raise ParseError.at(arg, f"{label} path must be a single identifier, got '{ast.unparse(arg)}'")
        found = arg.id
    return found


def resolve_config(node: ast.ClassDef, mode: Mode) -> GeneratorConfig:
    allowed = {mode.marker, mode.trait_attr, mode.type_attr}
    for dec in node.decorator_list:
        if decorator_name(dec) not in allowed:
            raise ParseError.at(dec, f"unsupported decorator '@{ast.unparse(dec)}' on @{mode.marker} union")

    trait = get_decorator_ident(node, mode.trait_attr, "Trait")
    if trait is None:
        raise ParseError.at(node, f"Missing @{mode.trait_attr}(TraitName) decorator")

    type_name = get_decorator_ident(node, mode.type_attr, mode.type_label)
    if not mode.bridges_errors:
        return GeneratorConfig(mode=mode, target_interface=trait, return_type=type_name)

    if type_name is None:
        raise ParseError.at(node, f"Missing @{mode.type_attr}(ErrorType) decorator")
    return GeneratorConfig(mode=mode, target_interface=trait, error_type=type_name)


def is_filler(stmt: ast.stmt) -> bool:
    if isinstance(stmt, ast.Pass):
        return True
    return isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant) and stmt.value.value is Ellipsis


def body_without_docstring(body: Sequence[ast.stmt]) -> Sequence[ast.stmt]:
    if body and isinstance(body[0], ast.Expr) and isinstance(body[0].value, ast.Constant):
        if isinstance(body[0].value.value, str):
            return body[1:]
    return body


def parse_annotated_variant(stmt: ast.AnnAssign) -> Variant:
    name = stmt.target.id  # type: ignore[union-attr]
    if stmt.value is not None:
        raise ParseError.at(stmt.value, f"variant '{name}' cannot have a value")

    shape = stmt.annotation
    if isinstance(shape, ast.Constant) and shape.value is None:
        return Variant(name=name, shape="unit")
    if isinstance(shape, ast.Tuple):
        if not shape.elts:
            return Variant(name=name, shape="unit")
        for elt in shape.elts:
            if isinstance(elt, ast.Starred):
                raise ParseError.at(elt, f"starred field types are not supported in variant '{name}'")
        field_types = [ast.unparse(elt) for elt in shape.elts]
        field_names = [f"_{i}" for i in range(len(field_types))]
        return Variant(name=name, shape="positional", field_names=field_names, field_types=field_types)

    raise ParseError.at(
        shape,
        f"expected '()', 'None' or a tuple of field types for variant '{name}', "
        f"got '{ast.unparse(shape)}' (use '({ast.unparse(shape)},)' for a single field)",
    )


def parse_record_variant(node: ast.ClassDef) -> Variant:
    if node.bases or node.keywords or node.decorator_list:
        raise ParseError.at(node, f"record variant '{node.name}' cannot have bases or decorators")

    variant = Variant(name=node.name, shape="named")
    for stmt in body_without_docstring(node.body):
        if is_filler(stmt):
            continue
        if not isinstance(stmt, ast.AnnAssign) or not isinstance(stmt.target, ast.Name):
            raise ParseError.at(stmt, f"expected '<name>: <type>' field in variant '{node.name}'")
        if stmt.value is not None:
            raise ParseError.at(stmt.value, "default field values are not supported")
        field_name = stmt.target.id
        if field_name in variant.field_names:
            raise ParseError.at(stmt, f"duplicate field '{field_name}' in variant '{node.name}'")
        variant.field_names.append(field_name)
        variant.field_types.append(ast.unparse(stmt.annotation))
    return variant


def routine_names(mode: Mode) -> set[str]:
    """Names the generated routine reads besides its class patterns."""
    names = {"self", mode.handler_param, "_"}
    if mode.bridges_errors:
        names.update(("Ok", "Err", "isinstance"))
    return names


def check_variant(
    variant: Variant, node: ast.stmt, mode: Mode, union_name: str, methods: Dict[str, str]
) -> None:
    if variant.name == mode.routine or variant.name.startswith("__"):
        raise ParseError.at(node, f"variant name '{variant.name}' is reserved")

    method = to_snake_case(variant.name)
    if keyword.iskeyword(method):
        raise ParseError.at(node, f"variant '{variant.name}' maps to '{method}', which is a Python keyword")
    if method in methods:
        raise ParseError.at(
            node, f"variants '{methods[method]}' and '{variant.name}' both map to handler method '{method}'"
        )
    methods[method] = variant.name

    if variant.shape == "named":
        reserved = routine_names(mode) | {union_name}
        for field_name in variant.field_names:
            if field_name in reserved:
                raise ParseError.at(node, f"field name '{field_name}' in variant '{variant.name}' is reserved")


def parse_variants(node: ast.ClassDef, mode: Mode) -> List[Variant]:
    variants: List[Variant] = []
    seen: set[str] = set()
    methods: Dict[str, str] = {}

    for stmt in body_without_docstring(node.body):
        if is_filler(stmt):
            continue
        if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            variant = parse_annotated_variant(stmt)
        elif isinstance(stmt, ast.ClassDef):
            variant = parse_record_variant(stmt)
        else:
            raise ParseError.at(
                stmt, f"expected variant declaration ('Name: (...)' or 'class Name:') in union '{node.name}'"
            )

        if variant.name in seen:
            raise ParseError.at(stmt, f"duplicate variant '{variant.name}' in union '{node.name}'")
        seen.add(variant.name)
        check_variant(variant, stmt, mode, node.name, methods)
        variants.append(variant)

    if not variants:
        raise ParseError.at(node, f"union '{node.name}' must declare at least one variant")
    return variants


def parse_union(node: ast.ClassDef, mode: Mode) -> UnionBlock:
    if node.bases or node.keywords:
        raise ParseError.at(node, f"union '{node.name}' cannot declare base classes")
    if node.name in routine_names(mode) or re.fullmatch(r"arg\d+", node.name):
        raise ParseError.at(node, f"union name '{node.name}' is reserved")

    config = resolve_config(node, mode)
    start = min(dec.lineno for dec in node.decorator_list) - 1
    return UnionBlock(
        name=node.name,
        start=start,
        end=node.end_lineno or node.lineno,
        config=config,
        variants=parse_variants(node, mode),
        docstring=ast.get_docstring(node),
    )


def parse_all_unions(text: str) -> List[UnionBlock]:
    try:
        module = ast.parse(text)
    except SyntaxError as e:
        raise ParseError(e.msg, e.lineno or 1, e.offset or 1) from e

    blocks: List[UnionBlock] = []
    for node in module.body:
        mode = find_marker(node)
        if mode is None:
            continue
        blocks.append(parse_union(node, mode))  # type: ignore[arg-type]

    top_level = {id(node) for node in module.body}
    for node in ast.walk(module):
        if id(node) in top_level:
            continue
        for dec in getattr(node, "decorator_list", []):
            name = decorator_name(dec)
            if name in MODES or name in CONFIG_ATTRS:
                raise ParseError.at(dec, f"@{name} is only allowed on module-level union declarations")
    return blocks


def destructure(union_name: str, variant: Variant) -> Tuple[str, List[str]]:
    """Return the class pattern matching ``variant`` and the call arguments it binds."""
    qualified = f"{union_name}.{variant.name}"
    if variant.shape == "named":
        args = list(variant.field_names)
        return f"{qualified}({', '.join(f'{name}={name}' for name in args)})", args
    if variant.shape == "positional":
        args = [f"arg{i}" for i in range(len(variant.field_types))]
        return f"{qualified}({', '.join(args)})", args
    return f"{qualified}()", []


def render_dispatch(block: UnionBlock) -> List[str]:
    config = block.config
    mode = config.mode
    param = mode.handler_param

    lines: List[str] = []
    lines.append(
        f'    async def {mode.routine}(self, {param}: "{config.target_interface}") -> "{config.outcome_type()}":'
    )
    lines.append("        match self:")
    for variant in block.variants:
        pattern, args = destructure(block.name, variant)
        call = f"await {param}.{to_snake_case(variant.name)}({', '.join(args)})"
        lines.append(f"            case {pattern}:")
        if mode.bridges_errors:
            lines.append(f"                outcome = {call}")
            lines.append("                if isinstance(outcome, Err):")
            lines.append("                    return outcome")
        else:
            lines.append(f"                return {call}")
    if mode.bridges_errors:
        lines.append("        return Ok(None)")
    return lines


def render_union(block: UnionBlock) -> str:
    config = block.config
    docstring = block.docstring or (
        f"Tagged union routed to {config.target_interface} by {config.mode.routine}()."
    )

    doc_lines = docstring.replace("\\", "\\\\").replace('"', '\\"').splitlines() or [""]

    lines: List[str] = []
    lines.append(f"class {block.name}:")
    if len(doc_lines) == 1:
        lines.append(f'    """{doc_lines[0]}"""')
    else:
        lines.append(f'    """{doc_lines[0]}')
        lines.extend(f"    {line}".rstrip() for line in doc_lines[1:])
        lines.append('    """')
    lines.append("")
    lines.append("    __slots__ = ()")
    lines.append("")
    lines.append("    def __init__(self) -> None:")
    lines.append(
        f'        raise TypeError("{block.name} cannot be instantiated directly; construct one of its variants")'
    )
    lines.append("")
    lines.extend(render_dispatch(block))

    for variant in block.variants:
        lines.append("")
        lines.append("")
        lines.append("@dataclasses.dataclass(frozen=True)")
        lines.append(f"class {block.name}__{variant.name}({block.name}):")
        if variant.field_names:
            for field_name, field_type in zip(variant.field_names, variant.field_types):
                lines.append(f"    {field_name}: {field_type!r}")
        else:
            lines.append("    pass")

    lines.append("")
    lines.append("")
    for variant in block.variants:
        helper = f"{block.name}__{variant.name}"
        lines.append(f"{block.name}.{variant.name} = {helper}")
        lines.append(f'{helper}.__qualname__ = "{block.name}.{variant.name}"')

    return "\n".join(lines)


def apply_substitutions(source: str, blocks: Sequence[UnionBlock]) -> str:
    lines = source.splitlines(keepends=True)
    pieces: List[str] = []
    cursor = 0

    header: List[str] = []
    if not re.search(r"^import dataclasses\s*$", source, re.MULTILINE):
        header.append(DATACLASSES_IMPORT)
    if any(b.config.mode.bridges_errors for b in blocks) and RUNTIME_IMPORT not in source:
        header.append(RUNTIME_IMPORT)
    injected_header = False

    for block in blocks:
        pieces.append("".join(lines[cursor : block.start]))
        replacement = render_union(block)
        if header and not injected_header:
            replacement = "\n".join(header) + "\n\n\n" + replacement
            injected_header = True
        pieces.append(replacement + "\n")
        cursor = block.end

    pieces.append("".join(lines[cursor:]))
    return "".join(pieces)


def transform_source(source_text: str) -> str:
    blocks = parse_all_unions(source_text)
    return apply_substitutions(source_text, blocks)


def compute_file_digest(source_bytes: bytes) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def render_file(source_path: pathlib.Path, source_text: str, source_bytes: bytes) -> str:
    transformed = transform_source(source_text)
    digest = compute_file_digest(source_bytes)
    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    meta = (
        "# eventbridge-generated\n"
        f"# source: {source_label}\n"
        f"# generator_version: {GENERATOR_VERSION}\n"
        f"# format_version: {FORMAT_VERSION}\n"
        f"# digest: {digest}\n\n"
    )
    return meta + transformed


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def read_source(in_path: pathlib.Path) -> Tuple[bytes, str]:
    source_bytes = in_path.read_bytes()
    try:
        return source_bytes, source_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        line = source_bytes.count(b"\n", 0, e.start) + 1
        col = e.start - source_bytes.rfind(b"\n", 0, e.start)
        raise ParseError(f"schema source is not valid UTF-8 ({e.reason})", line, col) from e


def check_generated(out_path: pathlib.Path, rendered: str) -> int:
    if not out_path.exists():
        print(f"{out_path} is missing (run eventbridge-gen)", file=sys.stderr)
        return 1
    existing = out_path.read_text(encoding="utf-8")
    if existing == rendered:
        print(f"up-to-date: {out_path}")
        return 0
    if extract_existing_digest(existing) == extract_existing_digest(rendered):
        print(f"{out_path} was edited by hand (run eventbridge-gen to restore it)", file=sys.stderr)
    else:
        print(f"{out_path} is out of date (run eventbridge-gen)", file=sys.stderr)
    return 1


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    try:
        source_bytes, source_text = read_source(in_path)
        rendered = render_file(in_path, source_text, source_bytes)
    except ParseError as e:
        fail(in_path, e)
        return 1

    if args.check:
        return check_generated(out_path, rendered)

    if out_path.exists() and out_path.read_text(encoding="utf-8") == rendered:
        print(f"unchanged: {out_path}")
        return 0

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate event dispatch modules from .py.bridge sources")
    parser.add_argument("--in", dest="input", required=True, help="Input .py.bridge file")
    parser.add_argument("--out", dest="output", required=True, help="Output generated module")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())

"""
Tests for the chunker (verisearch.core.chunker).

Covers chunk construction (entity chunks, the import block, opaque
files, context padding) and relationship linking: props contracts,
naming-convention inference, importedBy, extendedBy, and file-level
import resolution.
"""

import pytest

from verisearch.core.chunker import (
    build_chunks,
    connect_relationships,
    link_file_relationships,
    naming_variants,
    resolve_import,
)
from verisearch.core.extractor import EntityExtractor, RegexStructuralParser
from verisearch.core.models import EntityKind


@pytest.fixture
def regex_extractor():
    """Parser chain without tree-sitter so line spans are deterministic."""
    return EntityExtractor([RegexStructuralParser()])


def _by_name(chunks):
    return {c.name: c for c in chunks}


# =============================================================================
# Chunk construction
# =============================================================================

class TestBuildChunks:

    def test_entity_and_import_chunks(self, widget_source, regex_extractor):
        chunks, entities, deps = build_chunks("src/Widget.tsx", widget_source,
                                              extractor=regex_extractor)
        assert [c.kind for c in chunks] == [
            EntityKind.IMPORTS, EntityKind.INTERFACE, EntityKind.UI_COMPONENT,
        ]
        imports = chunks[0]
        assert (imports.start_line, imports.end_line) == (1, 2)
        assert imports.name == "imports"
        assert imports.content.startswith("import React")
        assert imports.relationships.imports == ["react", "./format"]
        assert len(entities) == 2
        assert deps.import_sources() == ["react", "./format"]

    def test_chunk_content_is_entity_lines(self, widget_source, regex_extractor):
        chunks, _, _ = build_chunks("src/Widget.tsx", widget_source, extractor=regex_extractor)
        widget = _by_name(chunks)["Widget"]
        assert widget.content.splitlines()[0].startswith("export const Widget")
        assert widget.content.splitlines()[-1] == "};"
        assert widget.line_count == 8
        assert widget.metadata.language == "tsx"
        assert widget.metadata.is_exported is True
        assert widget.relationships.exports == ["Widget"]

    def test_context_padding(self, widget_source, regex_extractor):
        chunks, _, _ = build_chunks("src/Widget.tsx", widget_source, context_lines=2,
                                    extractor=regex_extractor)
        props = _by_name(chunks)["WidgetProps"]
        assert (props.start_line, props.end_line) == (3, 11)

    def test_padding_is_clamped_to_file(self, regex_extractor):
        chunks, _, _ = build_chunks("a.ts", "export const a = 1;\n", context_lines=5,
                                    extractor=regex_extractor)
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 1)

    def test_type_definition_for_contracts(self, widget_source, regex_extractor):
        chunks, _, _ = build_chunks("src/Widget.tsx", widget_source, extractor=regex_extractor)
        type_def = _by_name(chunks)["WidgetProps"].metadata.type_definition
        assert type_def is not None
        assert [p.name for p in type_def.properties] == ["title", "count", "onSelect"]
        assert type_def.is_contract is True

    def test_opaque_file_chunk(self, regex_extractor):
        text = "import './polyfills';\n\nwindow.ready = true;\n"
        chunks, entities, _ = build_chunks("src/setup.js", text, extractor=regex_extractor)
        assert entities == []
        assert len(chunks) == 1
        assert chunks[0].kind == EntityKind.FILE
        assert chunks[0].name == "setup"
        assert chunks[0].content == text
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 3)

    def test_class_extends_recorded(self, service_source, regex_extractor):
        chunks, _, _ = build_chunks("UserService.ts", service_source, extractor=regex_extractor)
        service = _by_name(chunks)["UserService"]
        assert service.relationships.extends_from == ["BaseService"]
        method = _by_name(chunks)["fetchUser"]
        assert method.metadata.parent_name == "UserService"


# =============================================================================
# Relationship linking
# =============================================================================

class TestConnectRelationships:

    def test_props_contract_links_literal_component(self, widget_source, regex_extractor):
        chunks, _, _ = build_chunks("src/Widget.tsx", widget_source, extractor=regex_extractor)
        connect_relationships(chunks)
        by_name = _by_name(chunks)
        assert by_name["WidgetProps"].relationships.used_by_entities == ["Widget"]
        assert "WidgetProps" in by_name["Widget"].relationships.related_entities
        type_def = by_name["WidgetProps"].metadata.type_definition
        assert type_def.contract_for == "Widget"
        assert by_name["WidgetProps"].relationships.inferred == []

    def test_naming_variant_is_inferred_not_verified(self, regex_extractor):
        text = (
            "export interface AssetFieldsProps {\n"
            "  asset: string;\n"
            "}\n"
            "\n"
            "export function Asset({ asset }: { asset: string }) {\n"
            "  return <div>{asset}</div>;\n"
            "}\n"
        )
        chunks, _, _ = build_chunks("Asset.tsx", text, extractor=regex_extractor)
        connect_relationships(chunks)
        props = _by_name(chunks)["AssetFieldsProps"]
        assert props.relationships.used_by_entities == []
        assert [(e.relation, e.target) for e in props.relationships.inferred] == [("used_by", "Asset")]
        asset = _by_name(chunks)["Asset"]
        assert "AssetFieldsProps" not in asset.relationships.related_entities
        assert [e.target for e in asset.relationships.inferred] == ["AssetFieldsProps"]

    def test_naming_variants(self):
        variants = naming_variants("TradeFormProps")
        assert variants[0] == "Trade"
        assert "TradeFormForm" not in variants
        assert "TradeFormFields" in variants

    def test_imported_by_requires_literal_import(self, regex_extractor):
        widget_chunks, _, widget_deps = build_chunks(
            "src/Widget.tsx", "export function Widget() { return <div/> }\n",
            extractor=regex_extractor,
        )
        page_chunks, _, page_deps = build_chunks(
            "src/Page.tsx",
            "import { Widget } from './Widget';\n"
            "export function Page() { return <Widget/> }\n",
            extractor=regex_extractor,
        )
        other_chunks, _, other_deps = build_chunks(
            "src/Other.tsx",
            "import { WidgetList } from './WidgetList';\n"
            "export function Other() { return <WidgetList/> }\n",
            extractor=regex_extractor,
        )
        chunks = widget_chunks + page_chunks + other_chunks
        deps = {
            "src/Widget.tsx": widget_deps,
            "src/Page.tsx": page_deps,
            "src/Other.tsx": other_deps,
        }
        connect_relationships(chunks, deps)
        widget = _by_name(chunks)["Widget"]
        assert widget.relationships.imported_by == ["src/Page.tsx"]

    def test_imported_by_follows_the_resolved_path(self, regex_extractor):
        button = "export function Button() { return <button/> }\n"
        primary, _, primary_deps = build_chunks("src/a/Button.tsx", button, extractor=regex_extractor)
        legacy, _, legacy_deps = build_chunks("src/b/Button.tsx", button, extractor=regex_extractor)
        page, _, page_deps = build_chunks(
            "src/Page.tsx",
            "import { Button } from './a/Button';\n"
            "export function Page() { return <Button/> }\n",
            extractor=regex_extractor,
        )
        form, _, form_deps = build_chunks(
            "src/forms/Form.tsx",
            "import { Button } from '@/b/Button';\n"
            "export function Form() { return <Button/> }\n",
            extractor=regex_extractor,
        )
        connect_relationships(primary + legacy + page + form, {
            "src/a/Button.tsx": primary_deps,
            "src/b/Button.tsx": legacy_deps,
            "src/Page.tsx": page_deps,
            "src/forms/Form.tsx": form_deps,
        })
        assert _by_name(primary)["Button"].relationships.imported_by == ["src/Page.tsx"]
        assert _by_name(legacy)["Button"].relationships.imported_by == ["src/forms/Form.tsx"]

    def test_extended_by_back_edge(self, service_source, regex_extractor):
        chunks, _, _ = build_chunks("UserService.ts", service_source, extractor=regex_extractor)
        connect_relationships(chunks)
        base = _by_name(chunks)["BaseService"]
        assert base.relationships.extended_by == ["UserService"]

    def test_interface_extends_back_edge(self, regex_extractor):
        text = (
            "interface Base {\n  id: string;\n}\n"
            "interface Item extends Base {\n  name: string;\n}\n"
        )
        chunks, _, _ = build_chunks("types.ts", text, extractor=regex_extractor)
        connect_relationships(chunks)
        assert _by_name(chunks)["Base"].relationships.extended_by == ["Item"]

    def test_referenced_contract_records_user(self, widget_source, regex_extractor):
        chunks, _, _ = build_chunks("src/Widget.tsx", widget_source, extractor=regex_extractor)
        connect_relationships(chunks)
        type_def = _by_name(chunks)["WidgetProps"].metadata.type_definition
        assert type_def.referenced_by == ["Widget"]

    def test_method_signature_links_related_type(self, service_source, regex_extractor):
        chunks, _, _ = build_chunks("UserService.ts", service_source, extractor=regex_extractor)
        connect_relationships(chunks)
        assert "UserData" in _by_name(chunks)["fetchUser"].relationships.related_entities
        assert _by_name(chunks)["UserData"].relationships.used_by_entities == []

    def test_import_chunks_are_not_addressable(self, widget_source, regex_extractor):
        chunks, _, _ = build_chunks("src/Widget.tsx", widget_source, extractor=regex_extractor)
        connect_relationships(chunks)
        for chunk in chunks:
            assert "imports" not in chunk.relationships.related_entities
            assert "imports" not in chunk.relationships.used_by_entities

    def test_every_verified_edge_names_a_real_chunk(self, widget_source, service_source,
                                                    regex_extractor):
        a, _, deps_a = build_chunks("src/Widget.tsx", widget_source, extractor=regex_extractor)
        b, _, deps_b = build_chunks("src/UserService.ts", service_source, extractor=regex_extractor)
        chunks = a + b
        connect_relationships(chunks, {"src/Widget.tsx": deps_a, "src/UserService.ts": deps_b})
        names = {c.name for c in chunks}
        import_text = " ".join(r.text for d in (deps_a, deps_b) for r in d.imports)
        for chunk in chunks:
            for used_by in chunk.relationships.used_by_entities:
                assert used_by in names
            for importer in chunk.relationships.imported_by:
                assert chunk.name in import_text
                assert importer in ("src/Widget.tsx", "src/UserService.ts")


# =============================================================================
# File-level import resolution
# =============================================================================

class TestFileRelationships:

    @pytest.mark.parametrize("source,expected", [
        ("./format", "src/components/format.ts"),
        ("./format.ts", "src/components/format.ts"),
        ("../hooks", "src/hooks/index.ts"),
        ("react", None),
        ("./missing", None),
    ])
    def test_resolve_import(self, source, expected):
        known = ["src/components/format.ts", "src/hooks/index.ts", "src/components/Widget.tsx"]
        assert resolve_import(source, "src/components/Widget.tsx", known) == expected

    def test_exports_to_and_direct_import_links(self, widget_source, format_source,
                                                regex_extractor):
        widget_chunks, _, widget_deps = build_chunks(
            "src/components/Widget.tsx", widget_source, extractor=regex_extractor,
        )
        format_chunks, _, format_deps = build_chunks(
            "src/components/format.ts", format_source, extractor=regex_extractor,
        )
        chunks_by_file = {
            "src/components/Widget.tsx": widget_chunks,
            "src/components/format.ts": format_chunks,
        }
        link_file_relationships(chunks_by_file, {
            "src/components/Widget.tsx": widget_deps,
            "src/components/format.ts": format_deps,
        })
        imports = widget_chunks[0]
        assert imports.kind == EntityKind.IMPORTS
        assert imports.relationships.exports_to == ["src/components/format.ts"]
        assert imports.relationships.related_entities == ["formatCount"]
        format_count = _by_name(format_chunks)["formatCount"]
        assert format_count.relationships.imported_by == ["src/components/Widget.tsx"]

"""Tests for prompt builders."""

from tastegraph.core.contracts import Descriptor, GenerationFilters
from tastegraph.core.graph import TagGraph
from tastegraph.llm.prompts import (
    build_combination_prompt,
    build_recommendation_prompt,
    build_signal_extraction_prompt,
    select_image_descriptors,
    summarize_graph,
    visual_prompt_parts,
)


def _descriptors(n, with_images=True):
    return [
        Descriptor(
            item_id=f"p{i}",
            title=f"Title {i}",
            alt_text=f"alt {i}",
            url=f"https://example.com/pin/{i}",
            image_url=f"https://img.example.com/{i}.jpg" if with_images else None,
        )
        for i in range(n)
    ]


def test_signal_prompt_lists_every_descriptor():
    prompt = build_signal_extraction_prompt(_descriptors(3))

    for i in range(3):
        assert f'Item {i + 1}: title="Title {i}"' in prompt
    assert '"keywords":[]' in prompt


def test_signal_prompt_escapes_quotes():
    prompt = build_signal_extraction_prompt([Descriptor(item_id="x", title='The "Best" Mug')])
    assert "The 'Best' Mug" in prompt


def test_visual_prompt_caps_images():
    descriptors = _descriptors(10)
    descriptors[0].image_url = None

    selected = select_image_descriptors(descriptors, 6)
    parts = visual_prompt_parts(descriptors, 6)

    assert len(selected) == 6
    assert selected[0].item_id == "p1"
    assert sum(1 for p in parts if p.is_image) == 6
    assert parts[-1].text is not None
    assert "Image 6:" in parts[-1].text
    assert "Image 7:" not in parts[-1].text


def test_visual_prompt_labels_inline_payloads():
    descriptors = [Descriptor(item_id="x", title="Inline", image_url="data:image/png;base64,AAAA")]
    parts = visual_prompt_parts(descriptors, 6)
    assert "attached image 1" in parts[-1].text
    assert "base64" not in parts[-1].text


def test_summary_skips_empty_channels_and_caps_at_eight():
    graph = TagGraph.from_dict(
        {
            "themes": {f"t{i}": 20 - i for i in range(12)},
            "colors": {"sage": 3},
            "keywords": {"woodworking": 9},
        }
    )

    summary = summarize_graph(graph)

    lines = summary.splitlines()
    assert lines[0].startswith("Themes: t0, t1")
    assert lines[0].count(",") == 7
    assert lines[1] == "Colors: sage"
    assert "Aesthetics" not in summary
    assert lines[2] == "Keywords: woodworking"


def test_recommendation_prompt_includes_filters():
    graph = TagGraph.from_signals({"themes": ["cozy"]})
    filters = GenerationFilters(occasion="birthday", budget="under $50", recipient_age="teen")

    prompt = build_recommendation_prompt(graph, 8, filters)

    assert "Suggest 8 specific, creative gift ideas for birthday, budget: under $50, recipient: teen." in prompt
    assert "Themes: cozy" in prompt


def test_recommendation_prompt_omits_default_filters():
    graph = TagGraph.from_signals({"themes": ["cozy"]})
    prompt = build_recommendation_prompt(graph, 4, GenerationFilters(budget="any", recipient_age="adult"))
    assert "Suggest 4 specific, creative gift ideas." in prompt


def test_combination_prompt():
    graph = TagGraph.from_signals({"themes": ["cozy", "rustic"], "colors": ["sage"]})

    prompt = build_combination_prompt(["cozy", "sage"], graph)

    assert "Tags selected: cozy, sage" in prompt
    assert "colors: sage" in prompt
    assert "combinedConcept" in prompt

# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for prompt composition."""
from promptopt.blocks import PATCH_HEADER, clean_patch, compose_prompt, split_prompt
from promptopt.models import ChampionPrompt


class TestCompose:
    def test_empty_patch_returns_base(self):
        assert compose_prompt("Base prompt\n", "") == "Base prompt\n"
        assert compose_prompt("Base prompt", "   ") == "Base prompt"

    def test_patch_section(self):
        out = compose_prompt("  Base prompt  ", "  Extra rule: be specific  ")
        assert out == "Base prompt\n\n{}\nExtra rule: be specific\n".format(PATCH_HEADER)

    def test_split_roundtrip(self):
        composed = compose_prompt("Base", "Extra rule: one\nExtra rule: two")
        base, patch = split_prompt(composed)
        assert base == "Base"
        assert patch == "Extra rule: one\nExtra rule: two"

    def test_split_without_patch(self):
        assert split_prompt("Just a base") == ("Just a base", "")

    def test_champion_composed(self):
        champ = ChampionPrompt(base="Base", patch="Extra rule: x")
        assert champ.composed() == compose_prompt("Base", "Extra rule: x")
        assert ChampionPrompt(base="Base").composed() == "Base"


class TestCleanPatch:
    def test_strips_fences(self):
        assert clean_patch("```\nExtra rule: a\n```") == "Extra rule: a"
        assert clean_patch("```markdown\nExtra rule: a\n```") == "Extra rule: a"

    def test_plain_text_untouched(self):
        assert clean_patch("  Extra rule: a  ") == "Extra rule: a"

    def test_empty(self):
        assert clean_patch("") == ""
        assert clean_patch(None) == ""

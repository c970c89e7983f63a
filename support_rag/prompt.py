#!/usr/bin/env python3
"""Grounded prompt templates for the support assistant.

The model may only answer from the numbered knowledge items it is given,
must cite them, and must say so when nothing relevant was found.
"""

from typing import List, Optional, Sequence

from support_rag.models import AssembledPrompt, DEFAULT_SYSTEM_INSTRUCTION, KnowledgeItem


class PromptAssembler:
    """Build the system and user prompts for one grounded chat turn."""

    # Fixed contract text; not configurable per project
    GROUNDING_RULES = """You are a product support AI that answers strictly from the provided knowledge base.

IMPORTANT GUIDELINES:
1. Strictly use only the information provided in the context for your answers.
2. Cite your sources by referencing the knowledge item number, e.g. [Knowledge Item 1].
3. If no relevant information is found, clearly state that you don't have specific information about the topic. Never invent an answer.
4. Be concise and direct.
5. Maintain a professional and helpful tone."""

    NO_INFORMATION_MARKER = "No direct match in knowledge base."

    NO_MATCH_CONTEXT = (
        NO_INFORMATION_MARKER
        + " No relevant information was found for this question. You must clearly state that you"
        " don't have specific information about the topic and suggest contacting human customer service."
    )

    @staticmethod
    def format_item(index: int, item: KnowledgeItem) -> str:
        """Render one item as a numbered block (1-based)."""
        return f"[Knowledge Item {index}: {item.title}]\n{item.content}"

    @classmethod
    def build_context(cls, ranked_items: Sequence[KnowledgeItem]) -> str:
        """Numbered blocks in retriever order, or the explicit no-match statement."""
        if not ranked_items:
            return cls.NO_MATCH_CONTEXT
        return "\n\n".join(cls.format_item(i, item) for i, item in enumerate(ranked_items, start=1))

    @classmethod
    def build_system_prompt(cls, system_instruction: Optional[str] = None) -> str:
        instruction = (system_instruction or "").strip() or DEFAULT_SYSTEM_INSTRUCTION
        return f"{instruction}\n\n{cls.GROUNDING_RULES}"

    @classmethod
    def build_user_prompt(cls, query: str, ranked_items: Sequence[KnowledgeItem]) -> str:
        return f"Context:\n{cls.build_context(ranked_items)}\n\nUser Question: {query}"

    @classmethod
    def assemble(
        cls,
        query: str,
        ranked_items: Sequence[KnowledgeItem],
        system_instruction: Optional[str] = None,
    ) -> AssembledPrompt:
        """
        Assemble the grounded prompt pair.

        Items are rendered in the order given; the assembler never re-ranks.
        """
        return AssembledPrompt(
            system=cls.build_system_prompt(system_instruction),
            user=cls.build_user_prompt(query, ranked_items),
        )

    @staticmethod
    def cited_titles(ranked_items: Sequence[KnowledgeItem]) -> List[str]:
        return [item.title for item in ranked_items]

"""Markdown export of a partition's knowledge."""

from __future__ import annotations

from datetime import datetime, timezone

from .models import EntryType, KnowledgeEntry, MemoryStats


def entry_to_markdown(entry: KnowledgeEntry) -> str:
    stars = "★" * entry.importance + "☆" * (10 - entry.importance)
    lines = [
        f"### {entry.topic}",
        "",
        f"**Type:** {entry.entry_type.value} | **Importance:** {stars} "
        f"| **By:** {entry.contributor_name}",
        "",
        f"**Created:** {entry.created_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        "",
    ]
    if entry.tags:
        lines += [f"**Tags:** {', '.join(entry.tags)}", ""]

    lines += [entry.content, ""]

    if entry.original_content and entry.entry_type == EntryType.COMPRESSED:
        lines += [
            "<details>",
            "<summary>Original Content (Pre-compression)</summary>",
            "",
            entry.original_content,
            "",
            "</details>",
            "",
        ]

    if entry.file_path:
        lines += [f"*Stored in: {entry.file_path}*", ""]

    lines += ["---", ""]
    return "\n".join(lines) + "\n"


def export_markdown(
    entries: list[KnowledgeEntry],
    stats: MemoryStats,
    title: str = "Knowledge Memory Export",
) -> str:
    """Render statistics and every entry, most important and newest first."""
    generated = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    by_type = stats.by_type

    md = f"# {title}\n\n"
    md += f"*Partition: {stats.partition_id} | Generated: {generated}*\n\n"
    md += "## Statistics\n\n"
    md += f"- Total Entries: {stats.total.entries}\n"
    md += f"- Total Tokens: ~{stats.total.tokens}\n"
    md += (
        f"- Working Memory: {stats.working_memory.entries} entries "
        f"(~{stats.working_memory.tokens} tokens)\n"
    )
    md += (
        f"- Extended Storage: {stats.extended_storage.entries} entries "
        f"(~{stats.extended_storage.tokens} tokens)\n\n"
    )
    md += "## Content by Type\n\n"
    for entry_type in EntryType:
        md += f"- {entry_type.value.capitalize()}: {by_type.get(entry_type.value, 0)}\n"
    md += "\n---\n\n"
    md += "## All Knowledge and Contributions\n\n"

    ordered = sorted(
        entries,
        key=lambda e: (e.importance, e.created_at.timestamp()),
        reverse=True,
    )
    for entry in ordered:
        md += entry_to_markdown(entry)

    return md

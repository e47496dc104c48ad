# catalog/mutations.py
def clean_tag(tag):
    return tag.strip().lower()


def normalize_tags(tags):
    """
    Trim and lowercase tags, dropping blanks and duplicates.

    First occurrence order is preserved.

    Args:
        tags (list[str]): Raw tag values

    Returns:
        list[str]: Normalized tag list
    """
    seen = set()
    out = []
    for t in tags or []:
        c = clean_tag(t)
        if c and c not in seen:
            seen.add(c)
            out.append(c)
    return out


def toggle_availability(record):
    """Return a copy of `record` with `available` flipped."""
    return {**record, "available": not record.get("available", True)}


def add_tag(record, tag):
    """Return a copy of `record` with `tag` added; adding an existing tag is a no-op."""
    return {**record, "tags": normalize_tags(list(record.get("tags") or []) + [tag])}


def remove_tag(record, tag):
    """Return a copy of `record` without `tag`; removing a missing tag is a no-op."""
    c = clean_tag(tag)
    return {**record, "tags": [t for t in normalize_tags(record.get("tags")) if t != c]}

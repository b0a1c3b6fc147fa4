from __future__ import annotations

import re

from beanloop.tasks.models import Task

BACKTICK_PATH = re.compile(r"`([^`\s]+\.(?:py|pyi|ts|tsx|js|jsx|json|md|toml|ya?ml|cfg|ini))`")
BARE_PATH = re.compile(
    r"(?:^|\s)((?:src|lib|tests?|scripts|docs)/[^\s,)`]+\.(?:py|pyi|ts|tsx|js|jsx|json|md|toml|ya?ml))",
    re.MULTILINE,
)
PARENT_CONTEXT_LINES = 20

IMPLEMENTATION_PREAMBLE = """
You are an autonomous coding agent running in a loop. You will be re-prompted
with this same task until you mark it complete. Your previous work is visible
in the codebase and git history.
""".strip()


def extract_file_paths(body: str) -> list[str]:
    found: dict[str, None] = {}
    for match in BACKTICK_PATH.finditer(body):
        found.setdefault(match.group(1))
    for match in BARE_PATH.finditer(body):
        found.setdefault(match.group(1))
    return list(found)


def _child_line(child: Task) -> str:
    return f"- [{child.status.value}] {child.id}: {child.title}"


def build_implementation_prompt(task: Task) -> str:
    sections = [IMPLEMENTATION_PREAMBLE]
    if task.parent is not None:
        parent_body = "\n".join(task.parent.body.splitlines()[:PARENT_CONTEXT_LINES])
        sections.append(f"## Context: {task.parent.title}\n{parent_body}".rstrip())
    sections.append(f"## Current Task: {task.id}\n### {task.title}\n\n{task.body}".rstrip())
    if task.children:
        sub_tasks = "\n".join(_child_line(child) for child in task.children)
        sections.append(f"### Sub-tasks\n{sub_tasks}")
    sections.append(
        f"""---

## Your Mission

1. Implement the checklist items in the task above
2. As you complete items, update the bean:
   `beans update {task.id} --body "..."` (change [ ] to [x])
3. Commit your work with conventional commits:
   - Type: feature->feat, bug->fix, task->chore
   - Include "Bean: {task.id}" in the commit body
4. Record what you actually did under a `## Changelog` heading in the bean body
5. When ALL items are done: `beans update {task.id} --status completed`

## If You Get Stuck

If you hit a blocker you cannot resolve:
1. `beans update {task.id} --tag blocked`
2. `beans create "Blocker: {{description}}" -t bug --blocking {task.id} -d "..."`
3. Exit cleanly - the loop will stop and a human can help

## Remember

- You will be re-run if the task isn't complete yet
- Your changes persist between runs (check git log)
- Focus on one checklist item at a time
- Test your changes before marking complete"""
    )
    return "\n\n".join(sections)


def build_review_prompt(task: Task) -> str:
    kind = task.type.value
    completed = [child for child in task.children if child.is_terminal]
    child_sections: list[str] = []
    for child in completed:
        paths = extract_file_paths(child.body)
        files = f"\nFiles mentioned: {', '.join(paths)}" if paths else ""
        child_sections.append(
            f"### {child.id}: {child.title}\n"
            f"Type: {child.type.value} | Status: {child.status.value}{files}\n\n"
            f"{child.body}\n\n---"
        )
    all_paths: dict[str, None] = {}
    for child in completed:
        for path in extract_file_paths(child.body):
            all_paths.setdefault(path)
    files_ref = ""
    if all_paths:
        listing = "\n".join(f"- `{path}`" for path in all_paths)
        files_ref = f"\n## Files to Review\n\nBased on child beans:\n{listing}\n"

    children_text = "\n\n".join(child_sections) or "No child beans found."
    return f"""You are a senior engineer reviewing completed work before marking a {kind} as done.

## {kind.capitalize()}: {task.id}
### {task.title}

{task.body}
{files_ref}
---

## Completed Children to Review

{children_text}

---

## Your Review Process

1. Read each child bean to understand what should have been implemented
2. Read the actual code for the files mentioned in each child bean
3. Sanity check the implementations for bugs, project conventions and error handling
4. Run the test suite
5. Verify the components integrate correctly

## Outcome

If everything looks good:
- `beans update {task.id} --status completed`

If you find issues:
- Create a bug bean as a child for each issue:
  `beans create "Issue: {{description}}" -t bug --parent {task.id} -d "..."`
- Exit cleanly - the {kind} will wait for the bugs to be fixed, then be reviewed again

## Remember

- You are reviewing, not implementing
- Focus on correctness and integration, not style nitpicks
- Exit with code 0 when done"""


def build_prompt(task: Task) -> str:
    if task.is_composite:
        return build_review_prompt(task)
    return build_implementation_prompt(task)

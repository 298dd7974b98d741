"""
epicflow list - List the stories of an epic.
"""

from epicflow.lib.config import ProjectLayout
from epicflow.lib.stories import SprintStatus, discover_stories, find_epic_file, sprint_status_key
from epicflow.workflow.fsm import normalize_status


def cmd_list(args, layout: ProjectLayout) -> int:
    epic_id = args.epic_id
    stories = discover_stories(epic_id, layout.story_dirs)
    epic_file = find_epic_file(epic_id, layout.epics_dir)
    sprint = SprintStatus.locate(layout)
    sprint_entries = sprint.entries() if sprint else {}

    print(f"Epic {epic_id}: {epic_file or 'epic file not found'}")
    print("-" * 60)
    if not stories:
        print("  No stories found")
        return 0

    for index, story in enumerate(stories):
        status = normalize_status(story.status)
        sprint_value = sprint_entries.get(sprint_status_key(story.id))
        sprint_note = f" [sprint: {sprint_value}]" if sprint_value else ""
        title = story.title[:40] + "..." if len(story.title) > 40 else story.title
        print(f"  {index:>3} {story.id:<28} {status:<12} {title}{sprint_note}")

    print()
    done = sum(1 for s in stories if normalize_status(s.status) == "done")
    print(f"{len(stories)} story(s), {done} done")
    return 0

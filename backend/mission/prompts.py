"""Message templates sent to agent sessions.

This module contains the text the engine sends through the gateway:
- Dispatch messages carrying an agent's task bundle
- The hierarchical lead briefing
- The completion protocol every agent is asked to follow
- Out-of-band system directives (steer, pause/resume, approvals)
"""

from models.schemas import Task, TeamMember

DIRECTIVE_PREFIX = "[System Directive]"

PAUSE_DIRECTIVE = "[PAUSE] Stop processing and wait for further instructions."
RESUME_DIRECTIVE = "[RESUME] Continue working on your current task."

COMPLETION_PROTOCOL = """\
## Completion Protocol
- When every task above is finished, end your final message with `[TASK_COMPLETE]`.
- If you need a decision or information from a human, end with `[WAITING_FOR_INPUT]`
  and state the question on the last line.
- If an action needs explicit approval first, write `[APPROVAL_REQUIRED] <action>`
  on its own line and wait.
- Put deliverable files in fenced code blocks with a filename,
  e.g. ```markdown filename=report.md."""


def compose_prompt_sections(*sections: str) -> str:
    """Compose message sections into a single deterministic message."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def system_directive(text: str) -> str:
    """Wrap text as an out-of-band system directive."""
    return f"{DIRECTIVE_PREFIX} {text.strip()}"


def approval_directive(action: str, approved: bool) -> str:
    if approved:
        return system_directive(f"[APPROVED] You may proceed with: {action}")
    return system_directive(f"[DENIED] Do not proceed with: {action}. Choose another approach.")


def build_agent_profile(member: TeamMember) -> str:
    """Describe who the agent is for this mission."""
    lines = [f"## Your Role\nYou are {member.name}."]
    if member.role_description:
        lines.append(f"Role: {member.role_description}")
    if member.goal:
        lines.append(f"Goal: {member.goal}")
    if member.backstory:
        lines.append(f"Background: {member.backstory}")
    return "\n".join(lines)


def build_task_list(tasks: list[Task]) -> str:
    items = []
    for index, task in enumerate(tasks, start=1):
        item = f"{index}. [{task.priority.value}] {task.title}"
        if task.description and task.description != task.title:
            item += f"\n   {task.description}"
        items.append(item)
    return "## Your Tasks\n" + "\n".join(items)


def build_dispatch_message(
    member: TeamMember,
    tasks: list[Task],
    goal: str,
    delegated_by: str | None = None,
) -> str:
    """Build the task-bundle message dispatched to one agent.

    Args:
        member: The receiving team member.
        tasks: Tasks assigned to the member.
        goal: The overall mission goal.
        delegated_by: Lead name in hierarchical mode; prefixes the message.
    """
    header = f"Delegated by {delegated_by}." if delegated_by else ""
    return compose_prompt_sections(
        header,
        f"## Mission Goal\n{goal}",
        build_agent_profile(member),
        build_task_list(tasks),
        COMPLETION_PROTOCOL,
    )


def build_lead_briefing(lead: TeamMember, team: list[TeamMember], goal: str) -> str:
    """Describe the mission and the rest of the team to the hierarchical lead."""
    others = [member for member in team if member.id != lead.id]
    if others:
        roster = "\n".join(
            f"- {member.name}: {member.role_description or 'general contributor'}"
            for member in others
        )
    else:
        roster = "- (no other team members)"
    return compose_prompt_sections(
        f"Coordinate the team toward the mission goal: {goal}",
        f"## Team\n{roster}",
        "Review the team's progress, resolve conflicts between their results, "
        "and produce the final consolidated deliverable.",
    )

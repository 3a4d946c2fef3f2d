"""Workflow templates and output builders shared by the test suite."""

SINGLE_TEMPLATE = {
    "id": "two-step",
    "name": "Two step",
    "steps": [
        {
            "step_id": "plan",
            "agent_id": "planner",
            "input_template": "Plan {{task}}",
        },
        {
            "step_id": "build",
            "agent_id": "builder",
            "input_template": "Build {{task}} in {{repo}}",
        },
    ],
}

LOOP_TEMPLATE = {
    "id": "stories",
    "name": "Story loop",
    "steps": [
        {
            "step_id": "plan",
            "agent_id": "planner",
            "input_template": "Plan {{task}}",
        },
        {
            "step_id": "implement",
            "agent_id": "developer",
            "type": "loop",
            "loop": {"over": "stories"},
            "input_template": "{{current_story}}\n\nDone:\n{{completed_stories}}",
        },
        {
            "step_id": "wrap-up",
            "agent_id": "writer",
            "input_template": "Summarise {{task}}",
        },
    ],
}

VERIFY_TEMPLATE = {
    "id": "verified",
    "name": "Verified loop",
    "steps": [
        {
            "step_id": "plan",
            "agent_id": "planner",
            "input_template": "Plan {{task}}",
        },
        {
            "step_id": "implement",
            "agent_id": "developer",
            "type": "loop",
            "loop": {"over": "stories", "verifyEach": True, "verifyStep": "verify"},
            "input_template": "{{current_story}}",
        },
        {
            "step_id": "verify",
            "agent_id": "verifier",
            "input_template": "Verify {{current_story_id}}: {{story_output}}",
            "expects": "STATUS: done",
        },
    ],
}

APPROVAL_TEMPLATE = {
    "id": "gated",
    "name": "Approval gated",
    "steps": [
        {
            "step_id": "draft",
            "agent_id": "writer",
            "input_template": "Draft {{task}}",
        },
        {"step_id": "review", "agent_id": "reviewer", "type": "approval"},
        {
            "step_id": "publish",
            "agent_id": "publisher",
            "input_template": "Publish {{task}}",
        },
    ],
}


def stories_output(*ids: str) -> str:
    items = ", ".join(
        f'{{"id": "{sid}", "title": "Story {sid}", "acceptanceCriteria": ["works"]}}'
        for sid in ids
    )
    return f"STATUS: done\nSTORIES_JSON: [{items}]"

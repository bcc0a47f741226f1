"""Per-town stores: beads, agents, mail, rigs, review queue, convoys, escalations."""

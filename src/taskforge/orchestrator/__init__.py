"""Task orchestration engine: lifecycle, sessions, reservations, mailbox and review."""

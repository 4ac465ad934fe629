# Match statuses
SENT = 'sent'
READY = 'ready'
LOBBY = 'lobby'
IN_PROGRESS = 'in_progress'
COMPLETED = 'completed'
CANCELLED = 'cancelled'
EXPIRED = 'expired'

NON_TERMINAL_STATUSES = (SENT, READY, LOBBY, IN_PROGRESS)
TERMINAL_STATUSES = (COMPLETED, CANCELLED, EXPIRED)

# Legal edges of the match state machine; terminal statuses have none
ALLOWED_TRANSITIONS = {
    SENT: {READY, CANCELLED, EXPIRED},
    READY: {LOBBY, CANCELLED, EXPIRED},
    LOBBY: {IN_PROGRESS, CANCELLED, EXPIRED},
    IN_PROGRESS: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
    EXPIRED: set(),
}

LOCK_READY = 'ready'
LOCK_IN_PROGRESS = 'in_progress'


def is_transition_allowed(old_status, new_status):
    return new_status in ALLOWED_TRANSITIONS.get(old_status, set())


def is_terminal(status):
    return status in TERMINAL_STATUSES

class FailureInjector:
    """Makes chosen cluster calls fail.

    ``fail_attempts`` maps ``(operation, object name)`` to how many calls fail
    before that call starts succeeding. ``"*"`` as the name matches any object.
    """

    def __init__(self, fail_attempts=None, delay=0):
        self.fail_map = fail_attempts or {}
        self.delay = delay
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def should_fail(self, operation, name):
        for key in ((operation, name), (operation, "*")):
            if key in self.fail_map:
                self.attempts[key] = self.attempts.get(key, 0) + 1
                return self.attempts[key] <= self.fail_map[key]
        return False

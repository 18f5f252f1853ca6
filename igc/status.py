class ExitCodes:
    SUCCESS = 0
    ERROR = 1
    PARAMETER_ERROR = 2

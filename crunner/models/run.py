from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from crunner.sandbox.pipeline import ExecutionMode, ExecutionRequest, RunResult


class RunRequest(BaseModel):
    """Batch run body. `code` and `stdin` are accepted for older clients."""

    source_code: str = Field(validation_alias=AliasChoices("sourceCode", "source_code", "code"))
    supplied_input: str = Field(
        default="",
        validation_alias=AliasChoices("suppliedInput", "supplied_input", "stdin"),
    )
    mode: ExecutionMode = ExecutionMode.BATCH

    def to_execution_request(self) -> ExecutionRequest:
        return ExecutionRequest(
            source_code=self.source_code,
            supplied_input=self.supplied_input,
            mode=self.mode,
        )


class RunResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    stdout: str = ""
    stderr: str = ""
    compile_error: str = ""
    exit_code: int | None = None
    timed_out: bool = False

    @classmethod
    def from_result(cls, result: RunResult) -> "RunResponse":
        return cls(
            stdout=result.stdout,
            stderr=result.stderr,
            compile_error=result.compile_error,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
        )

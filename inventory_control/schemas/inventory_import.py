from pydantic import BaseModel


class ImportOptions(BaseModel):
    organization_id: str = ""
    user_id: str = ""
    warehouse_id: str | None = None
    atomic: bool = False
    fail_on_first_error: bool = False
    max_rows: int | None = None
    max_file_size_bytes: int | None = None


class ImportRowError(BaseModel):
    row: int  # 1 is the header row; 0 marks file-level errors
    field: str
    message: str
    original_data: dict[str, str] | None = None


class ImportResult(BaseModel):
    success: bool
    partial_success: bool = False
    import_id: str
    total_rows: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    success_count: int = 0
    error_count: int = 0
    total_errors: int = 0
    errors: list[ImportRowError] = []
    warnings: list[str] = []

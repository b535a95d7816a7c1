type FilePathStr = str
type LineCoverage = int | None
type CoverageArray = list[LineCoverage]
type CoverageResult = dict[FilePathStr, CoverageArray]

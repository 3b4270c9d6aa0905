from walletgraph.schemas.identity import (
    IDENTITY_FIELDS,
    POSITIVE_FIELDS,
    PartialIdentity,
    WalletIdentity,
)
from walletgraph.schemas.job import (
    AccessTier,
    JobOptions,
    JobProgress,
    JobStatus,
    ProcessResult,
    SocialGraphWriteStatus,
)

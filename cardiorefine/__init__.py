from .config import RefinementConfig as RefinementConfig
from .errors import (
    RefinementError as RefinementError,
    ConfigurationError as ConfigurationError,
    AcceleratorError as AcceleratorError,
    NumericalWarning as NumericalWarning,
)
from .model import (
    VoxelType as VoxelType,
    VoxelGrid as VoxelGrid,
    LinkTopology as LinkTopology,
    LinkParameters as LinkParameters,
    StateSpaceModel as StateSpaceModel,
)
from .data import MeasurementData as MeasurementData
from .wiring import (
    neighbor_offsets as neighbor_offsets,
    offset_to_link_index as offset_to_link_index,
    link_index_to_offset as link_index_to_offset,
    grid_topology as grid_topology,
    samples_to_coef as samples_to_coef,
    coef_to_samples as coef_to_samples,
    samples_to_delay as samples_to_delay,
    parameters_from_velocities as parameters_from_velocities,
)
from .measurement import (
    predict_measurements as predict_measurements,
    biot_savart_measurement_matrix as biot_savart_measurement_matrix,
)
from .backend import (
    Backend as Backend,
    SequentialBackend as SequentialBackend,
    AcceleratorBackend as AcceleratorBackend,
    select_backend as select_backend,
)
from .metrics import BatchMetrics as BatchMetrics
from .training import (
    RefinementProgress as RefinementProgress,
    run_batch as run_batch,
    run_epoch as run_epoch,
    fit as fit,
)
from .evaluation import (
    predict_only as predict_only,
    evaluate as evaluate,
    simulate_measurements as simulate_measurements,
    parameter_deltas as parameter_deltas,
    effective_delays as effective_delays,
)

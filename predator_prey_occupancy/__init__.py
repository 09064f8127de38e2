"""Predator-prey occupancy models with interaction terms."""

from predator_prey_occupancy.config import Interaction, RunConfig
from predator_prey_occupancy.data import SurveyData, prepare_survey_data
from predator_prey_occupancy.model import OccupancyModel
from predator_prey_occupancy.orchestrator import OccupancyFit, fit_occupancy_model, save_fit
